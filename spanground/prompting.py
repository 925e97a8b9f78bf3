# Copyright 2025 Google LLC.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Default few-shot prompt renderer.

Examples are rendered in the same wire format the resolver parses, so a model
that imitates them produces output the resolver accepts.
"""

from __future__ import annotations

import dataclasses
import json

import yaml

from spanground import data
from spanground import schema


@dataclasses.dataclass
class PromptTemplateStructured:
  """A structured prompt template for few-shot examples.

  Attributes:
    description: Instructions or guidelines for the LLM.
    examples: ExampleData objects demonstrating the expected answers.
  """

  description: str
  examples: list[data.ExampleData] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class QAPromptGenerator:
  """Generates question-answer prompts from the provided template."""

  template: PromptTemplateStructured
  format_type: data.FormatType = data.FormatType.JSON
  attribute_suffix: str = schema.ATTRIBUTE_SUFFIX
  examples_heading: str = "Examples"
  question_prefix: str = "Q: "
  answer_prefix: str = "A: "
  fence_output: bool = True

  def __str__(self) -> str:
    """Returns a string representation of the prompt with an empty question."""
    return self.render("")

  def format_answer(self, extractions: list[data.Extraction]) -> str:
    """Serializes extractions in the wire format, fenced if configured."""
    records = [
        {
            extraction.extraction_class: extraction.extraction_text,
            schema.attributes_key(
                extraction.extraction_class, self.attribute_suffix
            ): (extraction.attributes or {}),
        }
        for extraction in extractions
    ]
    payload = {schema.EXTRACTIONS_KEY: records}

    if self.format_type == data.FormatType.YAML:
      content = yaml.dump(payload, default_flow_style=False, sort_keys=False)
    elif self.format_type == data.FormatType.JSON:
      content = json.dumps(payload, indent=2)
    else:
      raise ValueError(f"Unsupported format type: {self.format_type}")

    content = content.strip()
    if self.fence_output:
      return f"```{self.format_type.value}\n{content}\n```"
    return content

  def format_example_as_text(self, example: data.ExampleData) -> str:
    """Formats a single example as a question and its answer."""
    return "\n".join([
        f"{self.question_prefix}{example.text}",
        f"{self.answer_prefix}{self.format_answer(example.extractions)}\n",
    ])

  def render(self, question: str, additional_context: str | None = None) -> str:
    """Generate a text representation of the prompt.

    Args:
      question: That will be presented to the model.
      additional_context: Additional context to include in the prompt. An empty
        string is ignored.

    Returns:
      Text prompt with a question to be presented to a language model.
    """
    prompt_lines: list[str] = [f"{self.template.description}\n"]

    if additional_context:
      prompt_lines.append(f"{additional_context}\n")

    if self.template.examples:
      prompt_lines.append(self.examples_heading)
      for ex in self.template.examples:
        prompt_lines.append(self.format_example_as_text(ex))

    prompt_lines.append(f"{self.question_prefix}{question}")
    prompt_lines.append(self.answer_prefix)
    return "\n".join(prompt_lines)
