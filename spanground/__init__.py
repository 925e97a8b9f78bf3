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

"""SpanGround: grounded structured extraction from text with language models."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, cast
import warnings

from spanground import annotation
from spanground import chunking
from spanground import data
from spanground import data_lib
from spanground import exceptions
from spanground import inference
from spanground import prompting
from spanground import resolver
from spanground import schema
from spanground import tokenizer

__all__ = [
    "extract",
    "annotation",
    "chunking",
    "data",
    "data_lib",
    "exceptions",
    "inference",
    "prompting",
    "resolver",
    "schema",
    "tokenizer",
]

# Keys of `resolver_params` consumed by alignment and parsing rather than by
# the Resolver constructor.
_ANNOTATION_PARAM_KEYS = (
    "enable_fuzzy_alignment",
    "fuzzy_alignment_threshold",
    "suppress_parse_errors",
)


def extract(
    text_or_documents: str | data.Document | Iterable[data.Document],
    prompt_description: str | None = None,
    examples: Sequence[data.ExampleData] | None = None,
    model: inference.BaseLanguageModel | None = None,
    format_type: data.FormatType = data.FormatType.JSON,
    max_char_buffer: int = 1000,
    fence_output: bool = True,
    batch_length: int = 10,
    additional_context: str | None = None,
    resolver_params: dict[str, Any] | None = None,
    debug: bool = False,
    extraction_passes: int = 1,
) -> data.AnnotatedDocument | list[data.AnnotatedDocument]:
  """Extracts structured information from text.

  Retrieves structured information from the provided text or documents using a
  language model based on the instructions in prompt_description and guided by
  examples. Every returned extraction is grounded in its document: its
  character interval points at text the model quoted. Supports sequential
  extraction passes to improve recall at the cost of additional model calls.

  Must not be called from a running event loop; use
  `annotation.Annotator.async_annotate_documents` there.

  Args:
      text_or_documents: The source text, a single Document, or an iterable of
        Document objects.
      prompt_description: Instructions for what to extract from the text.
      examples: List of ExampleData objects to guide the extraction.
      model: The language model that answers the extraction prompts.
      format_type: The format type for the output (JSON or YAML).
      max_char_buffer: Max number of characters per chunk sent to the model.
      fence_output: Whether to prompt for and expect fenced output (```json or
        ```yaml). When False, raw JSON/YAML is expected.
      batch_length: Number of text chunks processed per batch. Higher values
        enable greater parallelization when batch_length >= model.max_workers.
        Defaults to 10.
      additional_context: Additional context to be added to the prompt during
        inference. Only used for a plain text input; Documents carry their own.
      resolver_params: Overrides for the `resolver.Resolver` defaults
        ('fence_output', 'format_type', 'extraction_attributes_suffix'). May
        also hold 'enable_fuzzy_alignment', 'fuzzy_alignment_threshold' and
        'suppress_parse_errors', which configure alignment and parsing.
      debug: Whether to show progress bars and an extraction summary.
      extraction_passes: Number of sequential extraction attempts to improve
        recall. When > 1, the passes are merged keeping non-overlapping results
        (first extraction wins for overlaps). Each additional pass reprocesses
        every chunk.

  Returns:
      An AnnotatedDocument when input is a string or a single Document, or a
      list of AnnotatedDocuments, in input order, when input is an iterable of
      Documents.

  Raises:
      ValueError: If examples or model is missing, or if extraction_passes,
        batch_length or max_char_buffer is smaller than 1.
  """
  if not examples:
    raise ValueError(
        "Examples are required for reliable extraction. Please provide at least"
        " one ExampleData object with sample extractions."
    )
  if model is None:
    raise ValueError("A language model is required for extraction.")
  if extraction_passes < 1:
    raise ValueError(
        f"extraction_passes must be at least 1, got {extraction_passes}."
    )
  if batch_length < 1:
    raise ValueError(f"batch_length must be at least 1, got {batch_length}.")
  if max_char_buffer < 1:
    raise ValueError(
        f"max_char_buffer must be at least 1, got {max_char_buffer}."
    )

  if batch_length < model.max_workers:
    warnings.warn(
        f"batch_length ({batch_length}) < max_workers ({model.max_workers}). "
        f"Only {batch_length} workers will be used. "
        "Set batch_length >= max_workers for optimal parallelization.",
        UserWarning,
        stacklevel=2,
    )

  prompt_template = prompting.PromptTemplateStructured(
      description=prompt_description or ""
  )
  prompt_template.examples.extend(examples)

  resolver_defaults: dict[str, Any] = {
      "fence_output": fence_output,
      "format_type": format_type,
      "extraction_attributes_suffix": schema.ATTRIBUTE_SUFFIX,
  }
  annotation_params = {}
  for key, value in (resolver_params or {}).items():
    if key in _ANNOTATION_PARAM_KEYS:
      annotation_params[key] = value
    else:
      resolver_defaults[key] = value

  res = resolver.Resolver(**resolver_defaults)

  annotator = annotation.Annotator(
      language_model=model,
      prompt_template=prompt_template,
      format_type=res.format_type,
      attribute_suffix=(
          res.extraction_attributes_suffix or schema.ATTRIBUTE_SUFFIX
      ),
      fence_output=res.fence_output,
  )

  if isinstance(text_or_documents, str):
    return annotator.annotate_text(
        text=text_or_documents,
        resolver=res,
        max_char_buffer=max_char_buffer,
        batch_length=batch_length,
        additional_context=additional_context,
        debug=debug,
        extraction_passes=extraction_passes,
        **annotation_params,
    )

  if isinstance(text_or_documents, data.Document):
    documents = [text_or_documents]
  else:
    documents = cast(Iterable[data.Document], text_or_documents)
  annotated_documents = annotator.annotate_documents(
      documents,
      resolver=res,
      max_char_buffer=max_char_buffer,
      batch_length=batch_length,
      debug=debug,
      extraction_passes=extraction_passes,
      **annotation_params,
  )
  if isinstance(text_or_documents, data.Document):
    return annotated_documents[0]
  return annotated_documents
