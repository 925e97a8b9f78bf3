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

"""Library for resolving LLM output.

In the context of this module, a "resolver" parses the textual output of an LLM
into Extraction objects and then grounds each extraction in the source text it
was produced from.
"""

from __future__ import annotations

import abc
from collections.abc import Iterator, Mapping, Sequence
import dataclasses
import json
import re
from typing import Any

from absl import logging
import pydantic
import yaml

from spanground import data
from spanground import exceptions
from spanground import schema
from spanground import tokenizer

FUZZY_ALIGNMENT_MIN_THRESHOLD = 0.75

# Opening fence, optionally tagged with the format name.
_FENCE_OPEN_PATTERN = re.compile(r"```(?:json|yaml|yml)?[ \t]*\n?", re.I)
_FENCE = "```"

_ATTRIBUTE_VALUE_ADAPTER = pydantic.TypeAdapter(
    str | list[str],
    config=pydantic.ConfigDict(coerce_numbers_to_str=True),
)


class ResolverParsingError(exceptions.SpanGroundError):
  """Error raised when content cannot be parsed as the given format."""


class AbstractResolver(abc.ABC):
  """Resolves LLM text outputs into structured data."""

  def __init__(
      self,
      fence_output: bool = True,
      format_type: data.FormatType = data.FormatType.JSON,
  ):
    """Initializes the AbstractResolver.

    Args:
      fence_output: Whether to expect fenced output (```json or ```yaml). When
        False, raw JSON/YAML is expected.
      format_type: The format type for the output (JSON or YAML).
    """
    self._fence_output = fence_output
    self._format_type = format_type

  @property
  def fence_output(self) -> bool:
    """Returns whether fenced output is expected."""
    return self._fence_output

  @fence_output.setter
  def fence_output(self, fence_output: bool) -> None:
    self._fence_output = fence_output

  @property
  def format_type(self) -> data.FormatType:
    """Returns the format type."""
    return self._format_type

  @format_type.setter
  def format_type(self, new_format_type: data.FormatType) -> None:
    self._format_type = new_format_type

  @abc.abstractmethod
  def resolve(
      self,
      input_text: str,
      suppress_parse_errors: bool = False,
      **kwargs,
  ) -> Sequence[data.Extraction]:
    """Parses model output into extractions.

    Args:
      input_text: Raw model output.
      suppress_parse_errors: Return an empty list instead of raising when the
        output cannot be parsed.
      **kwargs: Additional arguments for subclass implementations.

    Returns:
      Extractions in the order they appear in the output.
    """

  @abc.abstractmethod
  def align(
      self,
      extractions: Sequence[data.Extraction],
      source_text: str,
      token_offset: int,
      char_offset: int | None = None,
      enable_fuzzy_alignment: bool = True,
      fuzzy_alignment_threshold: float = FUZZY_ALIGNMENT_MIN_THRESHOLD,
      **kwargs,
  ) -> Iterator[data.Extraction]:
    """Grounds extractions in `source_text`.

    Args:
      extractions: Extractions to align with the source text.
      source_text: The chunk of text the extractions were produced from.
      token_offset: Document token index of the chunk's first token.
      char_offset: Document character index of the chunk's first character.
      enable_fuzzy_alignment: Whether to fall back to fuzzy matching when no
        exact match exists.
      fuzzy_alignment_threshold: Minimum token overlap ratio for a fuzzy match.
      **kwargs: Additional arguments for subclass implementations.

    Yields:
      Only the extractions that were aligned, with intervals and status set.
    """


@dataclasses.dataclass(frozen=True)
class AlignmentResult:
  """Where an extraction matched inside a source window.

  Attributes:
    start_index: First matching token, relative to the window.
    end_index: One past the last matching token, relative to the window.
    alignment_status: MATCH_EXACT or MATCH_FUZZY.
  """

  start_index: int
  end_index: int
  alignment_status: data.AlignmentStatus


class WordAligner:
  """Locates extraction token runs inside a tokenized source window.

  Matching is leftmost-first over windows of exactly the extraction's token
  length. The exact phase requires every normalized token to match. The fuzzy
  phase scores a window by the share of positions whose tokens are equal and
  accepts the first window whose score reaches the threshold. Insertions and
  deletions relative to the extraction text are not detected.
  """

  def __init__(
      self,
      enable_fuzzy_alignment: bool = True,
      fuzzy_alignment_threshold: float = FUZZY_ALIGNMENT_MIN_THRESHOLD,
  ):
    """Constructor.

    Args:
      enable_fuzzy_alignment: Whether to run the fuzzy phase.
      fuzzy_alignment_threshold: Minimum overlap ratio, in (0, 1].

    Raises:
      ValueError: If the threshold is outside (0, 1].
    """
    if not 0 < fuzzy_alignment_threshold <= 1:
      raise ValueError(
          "fuzzy_alignment_threshold must be in (0, 1], got"
          f" {fuzzy_alignment_threshold}."
      )
    self.enable_fuzzy_alignment = enable_fuzzy_alignment
    self.fuzzy_alignment_threshold = fuzzy_alignment_threshold

  def find_match(
      self,
      extraction_tokens: Sequence[str],
      source_tokens: Sequence[str],
  ) -> AlignmentResult | None:
    """Finds the first window of `source_tokens` matching the extraction.

    Args:
      extraction_tokens: Normalized tokens of the extraction text.
      source_tokens: Normalized tokens of the source window.

    Returns:
      The match, or None when neither phase finds one.
    """
    length = len(extraction_tokens)
    if not length or length > len(source_tokens):
      return None
    starts = range(len(source_tokens) - length + 1)
    expected = list(extraction_tokens)

    for start in starts:
      if list(source_tokens[start : start + length]) == expected:
        return AlignmentResult(
            start_index=start,
            end_index=start + length,
            alignment_status=data.AlignmentStatus.MATCH_EXACT,
        )

    if not self.enable_fuzzy_alignment:
      return None

    for start in starts:
      window = source_tokens[start : start + length]
      matches = sum(a == b for a, b in zip(window, expected))
      if matches / length >= self.fuzzy_alignment_threshold:
        return AlignmentResult(
            start_index=start,
            end_index=start + length,
            alignment_status=data.AlignmentStatus.MATCH_FUZZY,
        )
    return None

  def align_extractions(
      self,
      extractions: Sequence[data.Extraction],
      source_text: str,
      token_offset: int = 0,
      char_offset: int = 0,
  ) -> list[data.Extraction]:
    """Aligns extractions against one source window.

    Matched extractions are updated in place with document-level token and
    character intervals and an alignment status.

    Args:
      extractions: Extractions to align, in output order.
      source_text: The source window.
      token_offset: Document token index of the window's first token.
      char_offset: Document character index of the window's first character.

    Returns:
      The matched extractions, in input order.
    """
    tokenized_source = tokenizer.tokenize(source_text)
    source_tokens = [
        tokenizer.normalize_token(token) for token in tokenized_source.tokens
    ]

    aligned: list[data.Extraction] = []
    for extraction in extractions:
      result = self.find_match(
          tokenizer.tokenize_with_lowercase(extraction.extraction_text),
          source_tokens,
      )
      if result is None:
        logging.debug(
            "No alignment found for extraction %r.", extraction.extraction_text
        )
        continue

      extraction.token_interval = tokenizer.TokenInterval(
          start_index=token_offset + result.start_index,
          end_index=token_offset + result.end_index,
      )
      extraction.char_interval = _window_char_interval(
          tokenized_source, result, char_offset
      )
      extraction.alignment_status = result.alignment_status
      aligned.append(extraction)
    return aligned


def _window_char_interval(
    tokenized_source: tokenizer.TokenizedText,
    result: AlignmentResult,
    char_offset: int,
) -> data.CharInterval:
  """Maps a window-relative token match to document character positions."""
  char_intervals = tokenized_source.char_intervals
  start_pos = char_offset + char_intervals[result.start_index].start_pos
  if result.end_index <= len(char_intervals):
    end_pos = char_offset + char_intervals[result.end_index - 1].end_pos
  else:
    end_pos = char_offset + len(tokenized_source.text)
  return data.CharInterval(start_pos=start_pos, end_pos=end_pos)


class Resolver(AbstractResolver):
  """Resolver for YAML/JSON-based information extraction.

  Each record of the model output may carry several extraction classes. The
  attributes of a class sit next to it under the class key plus
  `extraction_attributes_suffix`.
  """

  def __init__(
      self,
      fence_output: bool = True,
      extraction_attributes_suffix: str | None = schema.ATTRIBUTE_SUFFIX,
      format_type: data.FormatType = data.FormatType.JSON,
  ):
    """Constructor.

    Args:
      fence_output: Whether to expect fenced output (```json or ```yaml).
      extraction_attributes_suffix: Suffix identifying attribute keys
        associated with extractions. None disables attributes.
      format_type: The format to parse (YAML or JSON).
    """
    super().__init__(fence_output=fence_output, format_type=format_type)
    self.extraction_attributes_suffix = extraction_attributes_suffix

  def resolve(
      self,
      input_text: str,
      suppress_parse_errors: bool = False,
      **kwargs,
  ) -> Sequence[data.Extraction]:
    """Runs resolve function on text with YAML/JSON extraction data.

    Args:
      input_text: The input text to be processed.
      suppress_parse_errors: Log errors and return no extractions.
      **kwargs: Additional keyword arguments.

    Returns:
      Extractions in output order.

    Raises:
      ResolverParsingError: If the content cannot be parsed or has an
        unexpected shape, and `suppress_parse_errors` is False.
    """
    logging.info("Starting resolver process for input text.")
    logging.debug("Input Text: %s", input_text)

    try:
      extraction_data = self.string_to_extraction_data(input_text)
      logging.debug("Parsed content: %s", extraction_data)
      processed_extractions = self.extract_ordered_extractions(
          extraction_data
      )
    except ResolverParsingError as e:
      if suppress_parse_errors:
        logging.exception(
            "Failed to parse input_text: %s, error: %s", input_text, e
        )
        return []
      raise

    logging.debug("Completed the resolver process.")
    return processed_extractions

  def align(
      self,
      extractions: Sequence[data.Extraction],
      source_text: str,
      token_offset: int,
      char_offset: int | None = None,
      enable_fuzzy_alignment: bool = True,
      fuzzy_alignment_threshold: float = FUZZY_ALIGNMENT_MIN_THRESHOLD,
      **kwargs,
  ) -> Iterator[data.Extraction]:
    """Aligns extractions with a chunk of source text.

    Args:
      extractions: Extractions resolved from the chunk's model output.
      source_text: The text chunk in which to align the extractions.
      token_offset: The starting token index of the chunk.
      char_offset: The starting character index of the chunk.
      enable_fuzzy_alignment: Whether to enable fuzzy alignment fallback.
      fuzzy_alignment_threshold: Minimum overlap ratio required for fuzzy
        alignment.
      **kwargs: Additional parameters.

    Yields:
      Aligned extractions. Extractions that cannot be grounded are dropped.
    """
    logging.info("Starting alignment process for provided chunk text.")

    if not extractions:
      logging.debug(
          "No extractions found in the annotated text; exiting alignment"
          " process."
      )
      return

    aligner = WordAligner(
        enable_fuzzy_alignment=enable_fuzzy_alignment,
        fuzzy_alignment_threshold=fuzzy_alignment_threshold,
    )
    aligned_extractions = aligner.align_extractions(
        extractions, source_text, token_offset, char_offset or 0
    )
    logging.debug(
        "Aligned %d of %d extractions.",
        len(aligned_extractions),
        len(extractions),
    )

    yield from aligned_extractions

    logging.info("Completed alignment process for the provided source_text.")

  def _extract_and_parse_content(self, input_string: str) -> Any:
    """Strips the fence if expected and deserializes the content.

    Args:
      input_string: The raw model output.

    Returns:
      The parsed Python object.

    Raises:
      ResolverParsingError: If the input is empty or cannot be deserialized.
    """
    if not input_string or not isinstance(input_string, str):
      logging.error("Input string must be a non-empty string.")
      raise ResolverParsingError("Input string must be a non-empty string.")

    content = input_string.strip()
    if self.fence_output:
      content = _strip_fence(content)
      logging.debug("Content: %s", content)

    try:
      if self.format_type == data.FormatType.YAML:
        return yaml.safe_load(content)
      return json.loads(content)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
      logging.exception("Failed to parse content.")
      raise ResolverParsingError(
          f"Failed to parse content as {self.format_type.value}."
      ) from e

  def string_to_extraction_data(
      self,
      input_string: str,
  ) -> Sequence[Mapping[str, Any]]:
    """Parses a YAML or JSON-formatted string into extraction records.

    The parsed value must either be a list of records or a mapping holding the
    list under `schema.EXTRACTIONS_KEY`.

    Args:
      input_string: Raw model output, fenced if `fence_output` is set.

    Returns:
      The records, in output order.

    Raises:
      ResolverParsingError: If the content cannot be parsed or has an
        unexpected shape.
    """
    parsed_data = self._extract_and_parse_content(input_string)

    if isinstance(parsed_data, list):
      records = parsed_data
    elif isinstance(parsed_data, dict) and isinstance(
        parsed_data.get(schema.EXTRACTIONS_KEY), list
    ):
      records = parsed_data[schema.EXTRACTIONS_KEY]
    else:
      logging.error(
          "Expected a list or a mapping with an '%s' list.",
          schema.EXTRACTIONS_KEY,
      )
      raise ResolverParsingError("Invalid extraction data format")

    for record in records:
      if not isinstance(record, dict):
        logging.error("Each item in the sequence must be a mapping.")
        raise ResolverParsingError(
            "Each item in the sequence must be a mapping."
        )
      if not all(isinstance(key, str) for key in record):
        raise ResolverParsingError("All record keys must be strings.")

    logging.info("Completed parsing of string.")
    return records

  def extract_ordered_extractions(
      self,
      extraction_data: Sequence[Mapping[str, Any]],
  ) -> list[data.Extraction]:
    """Turns parsed records into extractions, keeping output order.

    Every string-valued class field of a record becomes one Extraction whose
    `extraction_index` is the record's position. Fields holding anything other
    than a string are skipped. Attribute entries that are null or hold
    anything other than a string or a list of strings are dropped.

    Args:
      extraction_data: Records as returned by `string_to_extraction_data`.

    Returns:
      Extractions in output order.
    """
    logging.info("Starting to extract and order extractions from data.")

    if not extraction_data:
      logging.debug("Received empty extraction data.")

    suffix = self.extraction_attributes_suffix
    processed_extractions = []
    for record_index, record in enumerate(extraction_data):
      for key, value in record.items():
        record_key = schema.classify_key(key, suffix)
        if record_key.kind is schema.KeyKind.ATTRIBUTES_FIELD:
          continue
        if not isinstance(value, str):
          logging.debug(
              "Skipping non-string value for class %s: %r", key, value
          )
          continue

        attributes = None
        if suffix:
          attributes = _validate_attributes(
              key, record.get(schema.attributes_key(key, suffix))
          )

        processed_extractions.append(
            data.Extraction(
                extraction_class=record_key.extraction_class,
                extraction_text=value,
                extraction_index=record_index,
                group_index=record_index,
                attributes=attributes,
            )
        )

    logging.info("Completed extraction and ordering of extractions.")
    return processed_extractions


def _strip_fence(content: str) -> str:
  """Returns the body of the first fenced block in `content`.

  Text before the opening fence and after the closing fence is dropped. When
  the closing fence is missing, everything after the opening fence is kept.
  Content without an opening fence is returned unchanged.
  """
  opening = _FENCE_OPEN_PATTERN.search(content)
  if opening is None:
    logging.debug("No opening fence found; parsing the whole output.")
    return content
  closing = content.find(_FENCE, opening.end())
  if closing == -1:
    return content[opening.end() :].strip()
  return content[opening.end() : closing].strip()


def _validate_attributes(
    extraction_class: str, raw_attributes: Any
) -> dict[str, str | list[str]] | None:
  """Keeps the attribute entries holding a string or a list of strings.

  Null entries are dropped silently. Entries holding any other value are
  dropped with a warning; the remaining entries are kept.
  """
  if raw_attributes is None:
    return None
  if not isinstance(raw_attributes, dict):
    logging.debug(
        "Ignoring non-mapping attributes for class %s: %r",
        extraction_class,
        raw_attributes,
    )
    return None
  attributes = {}
  for name, value in raw_attributes.items():
    if value is None:
      continue
    try:
      attributes[str(name)] = _ATTRIBUTE_VALUE_ADAPTER.validate_python(value)
    except pydantic.ValidationError:
      logging.warning(
          "Dropping attribute %r of class %s with unsupported value: %r",
          name,
          extraction_class,
          value,
      )
  return attributes
