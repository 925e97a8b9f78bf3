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

"""Classes used to represent core data types of the extraction pipeline."""

from __future__ import annotations

import dataclasses
import enum

from spanground import tokenizer

CharInterval = tokenizer.CharInterval


class AlignmentStatus(enum.Enum):
  """How an extraction's text was located in the source.

  Only MATCH_EXACT and MATCH_FUZZY are produced by the aligner. MATCH_GREATER
  and MATCH_LESSER are reserved for containment matches.
  """

  MATCH_EXACT = "match_exact"
  MATCH_GREATER = "match_greater"
  MATCH_LESSER = "match_lesser"
  MATCH_FUZZY = "match_fuzzy"


class FormatType(enum.Enum):
  """Enumeration of model output formats."""

  YAML = "yaml"
  JSON = "json"


@dataclasses.dataclass
class Extraction:
  """A (class, text, attributes) record found in model output.

  Created by the resolver with `extraction_index` set to the position of its
  record in the parsed output. Alignment fills in `char_interval`,
  `token_interval` and `alignment_status`; all three stay None until then.

  Attributes:
    extraction_class: The class of the extraction.
    extraction_text: The text of the extraction.
    char_interval: Character span in the full document.
    token_interval: Token span in the full document.
    alignment_status: How the span was found.
    extraction_index: Position of the source record in the parsed output.
      Always set on extractions produced by the resolver; None only on the
      hand-written extractions of few-shot `ExampleData`.
    group_index: The index of the group the extraction belongs to.
    description: Optional free-text description.
    attributes: Attributes attached to the extraction in the model output.
  """

  extraction_class: str
  extraction_text: str
  char_interval: CharInterval | None = None
  token_interval: tokenizer.TokenInterval | None = None
  alignment_status: AlignmentStatus | None = None
  extraction_index: int | None = None
  group_index: int | None = None
  description: str | None = None
  attributes: dict[str, str | list[str]] | None = None


@dataclasses.dataclass
class Document:
  """An input document.

  Attributes:
    text: Raw text of the document.
    document_id: Caller supplied identifier. When None, the annotator assigns
      one for the duration of a single run without writing it back here.
    additional_context: Additional context to supplement prompt instructions.
  """

  text: str
  document_id: str | None = None
  additional_context: str | None = None


@dataclasses.dataclass
class AnnotatedDocument:
  """A document together with its resolved extractions.

  Attributes:
    document_id: Identifier of the source document.
    extractions: Extractions grounded in `text`.
    text: Raw text of the document.
    tokenized_text: Tokenized `text`, computed on first access.
  """

  document_id: str | None = None
  extractions: list[Extraction] | None = None
  text: str | None = None
  _tokenized_text: tokenizer.TokenizedText | None = dataclasses.field(
      default=None, repr=False, compare=False
  )

  @property
  def tokenized_text(self) -> tokenizer.TokenizedText | None:
    if self._tokenized_text is None and self.text is not None:
      self._tokenized_text = tokenizer.tokenize(self.text)
    return self._tokenized_text

  @tokenized_text.setter
  def tokenized_text(self, value: tokenizer.TokenizedText) -> None:
    self._tokenized_text = value


@dataclasses.dataclass
class ExampleData:
  """A single few-shot example for prompting.

  Attributes:
    text: The raw input text (sentence, paragraph, etc.).
    extractions: A list of Extraction objects extracted from the text.
  """

  text: str
  extractions: list[Extraction] = dataclasses.field(default_factory=list)
