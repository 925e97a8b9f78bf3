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

"""Library for breaking documents into fixed-size character windows.

When a language model with a fixed context size can not accommodate a large
document, the document is split into chunks of at most `max_char_buffer`
characters and each chunk is prompted separately. Every chunk remembers where
it starts in its document, both in characters and in tokens, so that
extractions aligned inside a chunk can be mapped back to document positions.

Chunk boundaries are not word-aware: a chunk may end in the middle of a word.
Alignment re-tokenizes each chunk on its own, so this only costs recall for an
entity cut by a boundary.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
import dataclasses

from absl import logging
import more_itertools

from spanground import data
from spanground import tokenizer


@dataclasses.dataclass(frozen=True)
class TextChunk:
  """A window of a document's text.

  Attributes:
    chunk_text: The text of the window.
    char_offset: Document character index of the window's first character.
    token_offset: Number of tokens found in the document's preceding chunks.
    document_index: Position of the owning document in the annotator's
      document arena.
    additional_context: Prompt context of the owning document.
  """

  chunk_text: str
  char_offset: int = 0
  token_offset: int = 0
  document_index: int = 0
  additional_context: str | None = None

  def __str__(self):
    return (
        "TextChunk(\n"
        f"  document_index={self.document_index},\n"
        f"  char_offset={self.char_offset},"
        f" token_offset={self.token_offset},\n"
        f"  Chunk Text: '{self.chunk_text}'\n"
        ")"
    )

  @property
  def char_interval(self) -> data.CharInterval:
    """Gets the document character interval covered by the chunk."""
    return data.CharInterval(
        start_pos=self.char_offset,
        end_pos=self.char_offset + len(self.chunk_text),
    )


class ChunkIterator:
  r"""Iterate through fixed-width chunks of a text.

  Starting at character 0, each chunk takes `min(max_char_buffer, remaining)`
  characters. The token offset of a chunk is the total token count of the
  chunks before it, each chunk tokenized on its own.

  Consider "Roses are red. Violets are blue." with max_char_buffer=15:
  * "Roses are red. " char_offset=0, token_offset=0
  * "Violets are blu" char_offset=15, token_offset=4
  * "e." char_offset=30, token_offset=7
  """

  def __init__(
      self,
      text: str,
      max_char_buffer: int,
      document_index: int = 0,
      additional_context: str | None = None,
  ):
    """Constructor.

    Args:
      text: Document text to chunk.
      max_char_buffer: Maximum number of characters per chunk.
      document_index: Arena index recorded on every chunk.
      additional_context: Prompt context recorded on every chunk.

    Raises:
      ValueError: If max_char_buffer is smaller than 1.
    """
    if max_char_buffer < 1:
      raise ValueError(
          f"max_char_buffer must be at least 1, got {max_char_buffer}."
      )
    self.text = text
    self.max_char_buffer = max_char_buffer
    self.document_index = document_index
    self.additional_context = additional_context
    self._char_pos = 0
    self._token_pos = 0

  def __iter__(self) -> Iterator[TextChunk]:
    return self

  def __next__(self) -> TextChunk:
    if self._char_pos >= len(self.text):
      raise StopIteration
    chunk_end = min(self._char_pos + self.max_char_buffer, len(self.text))
    chunk = TextChunk(
        chunk_text=self.text[self._char_pos : chunk_end],
        char_offset=self._char_pos,
        token_offset=self._token_pos,
        document_index=self.document_index,
        additional_context=self.additional_context,
    )
    self._char_pos = chunk_end
    self._token_pos += len(tokenizer.tokenize(chunk.chunk_text))
    return chunk


def chunk_text(text: str, max_char_buffer: int) -> list[TextChunk]:
  """Splits `text` into consecutive chunks of at most `max_char_buffer` chars.

  Args:
    text: Text to split.
    max_char_buffer: Maximum number of characters per chunk.

  Returns:
    Chunks whose texts concatenate back to `text`. Empty for empty text.
  """
  chunks = list(ChunkIterator(text, max_char_buffer))
  logging.debug("Split %d characters into %d chunks.", len(text), len(chunks))
  return chunks


def make_batches_of_textchunk(
    chunk_iter: Iterable[TextChunk],
    batch_length: int,
) -> Iterator[Sequence[TextChunk]]:
  """Groups chunks into batches for inference.

  Args:
    chunk_iter: Chunks in processing order.
    batch_length: Number of chunks to include in each batch.

  Yields:
    Batches of TextChunks; the last one may be shorter.
  """
  for batch in more_itertools.batched(chunk_iter, batch_length):
    yield list(batch)
