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

"""Tokenization utilities for text.

Splits text into word-level and punctuation-level tokens with exact character
offsets. The tokens are what the resolver aligns extractions against, and the
chunker uses token counts to keep track of each chunk's token offset into its
document. Tokens are never sent to the language model.
"""

from __future__ import annotations

import dataclasses
import re

from absl import logging

from spanground import exceptions


class BaseTokenizerError(exceptions.SpanGroundError):
  """Base class for all tokenizer-related errors."""


class InvalidTokenIntervalError(BaseTokenizerError):
  """Error raised when a token interval is invalid or out of range."""


@dataclasses.dataclass
class CharInterval:
  """A half-open range of character positions.

  Both positions stay None until the interval is resolved.

  Attributes:
    start_pos: The starting character index (inclusive).
    end_pos: The ending character index (exclusive).
  """

  start_pos: int | None = None
  end_pos: int | None = None


@dataclasses.dataclass
class TokenInterval:
  """Represents an interval over tokens in tokenized text.

  Attributes:
    start_index: The index of the first token in the interval.
    end_index: The index one past the last token in the interval.
  """

  start_index: int = 0
  end_index: int = 0


@dataclasses.dataclass
class TokenizedText:
  """Holds the result of tokenizing a text string.

  The three lists are index-aligned and always have the same length.

  Attributes:
    text: The original text that was tokenized.
    tokens: Token strings in their original case.
    token_intervals: `TokenInterval(i, i + 1)` for each token `i`.
    char_intervals: Character span of each token within `text`.
  """

  text: str
  tokens: list[str] = dataclasses.field(default_factory=list)
  token_intervals: list[TokenInterval] = dataclasses.field(
      default_factory=list
  )
  char_intervals: list[CharInterval] = dataclasses.field(default_factory=list)

  def __len__(self) -> int:
    return len(self.tokens)


# A run of word characters, or one character that is neither a word character
# nor whitespace.
_WORD_PATTERN = r"[A-Za-z0-9_]+"
_SYMBOL_PATTERN = r"[^A-Za-z0-9_\s]"
_TOKEN_PATTERN = re.compile(rf"{_WORD_PATTERN}|{_SYMBOL_PATTERN}")


def tokenize(text: str) -> TokenizedText:
  """Splits text into word and punctuation tokens.

  Args:
    text: The text to tokenize.

  Returns:
    A TokenizedText whose parallel lists describe every token. Whitespace
    produces no tokens, so an empty or blank string gives empty lists.
  """
  logging.debug("Entering tokenize() with text:\n%r", text)
  tokenized = TokenizedText(text=text)
  for token_index, match in enumerate(_TOKEN_PATTERN.finditer(text)):
    start_pos, end_pos = match.span()
    tokenized.tokens.append(match.group())
    tokenized.token_intervals.append(
        TokenInterval(start_index=token_index, end_index=token_index + 1)
    )
    tokenized.char_intervals.append(
        CharInterval(start_pos=start_pos, end_pos=end_pos)
    )
  logging.debug("Completed tokenize(). Total tokens: %d", len(tokenized))
  return tokenized


def normalize_token(token: str) -> str:
  """Lowercases and trims a token. Only used for comparisons."""
  return token.lower().strip()


def tokenize_with_lowercase(text: str) -> list[str]:
  """Returns the normalized token strings of `text`."""
  return [normalize_token(token) for token in tokenize(text).tokens]


def tokens_text(
    tokenized_text: TokenizedText,
    token_interval: TokenInterval,
) -> str:
  """Reconstructs the substring of the original text spanning a token interval.

  Args:
    tokenized_text: A TokenizedText object containing token data.
    token_interval: The interval specifying the range [start_index, end_index)
      of tokens.

  Returns:
    The exact substring of the original text corresponding to the token
    interval, including any whitespace between the tokens.

  Raises:
    InvalidTokenIntervalError: If the token_interval is invalid or out of range.
  """
  if (
      token_interval.start_index < 0
      or token_interval.end_index > len(tokenized_text)
      or token_interval.start_index >= token_interval.end_index
  ):
    raise InvalidTokenIntervalError(
        f"Invalid token interval. start_index={token_interval.start_index}, "
        f"end_index={token_interval.end_index}, "
        f"total_tokens={len(tokenized_text)}."
    )

  start = tokenized_text.char_intervals[token_interval.start_index]
  end = tokenized_text.char_intervals[token_interval.end_index - 1]
  return tokenized_text.text[start.start_pos : end.end_pos]
