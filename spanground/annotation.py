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

"""Provides functionality for annotating text using a language model.

The annotation process splits documents into chunks, renders one prompt per
chunk, sends the prompts to the language model batch by batch and resolves
each answer into extractions grounded in the chunk it came from. With several
extraction passes the whole sweep is repeated and the passes are merged.

Usage example:
    annotator = Annotator(language_model, prompt_template)
    annotated_documents = annotator.annotate_documents(documents, resolver)
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
import dataclasses
import time
import uuid

from absl import logging

from spanground import chunking
from spanground import data
from spanground import exceptions
from spanground import inference
from spanground import progress
from spanground import prompting
from spanground import resolver as resolver_lib
from spanground import schema
from spanground import tokenizer


class DocumentRepeatError(exceptions.SpanGroundError):
  """Exception raised when identical document ids are present."""


def _merge_non_overlapping_extractions(
    all_extractions: Sequence[Iterable[data.Extraction]],
) -> list[data.Extraction]:
  """Merges extractions from multiple extraction passes.

  When extractions from different passes overlap in their character positions,
  the extraction from the earlier pass is kept (first-pass wins strategy).
  Only non-overlapping extractions from later passes are added to the result.
  Extractions without a character interval never overlap anything.

  Args:
    all_extractions: List of extraction iterables from different sequential
      extraction passes, ordered by pass number.

  Returns:
    List of merged extractions with overlaps resolved in favor of earlier
    passes.
  """
  if not all_extractions:
    return []

  merged_extractions = list(all_extractions[0])

  for pass_extractions in all_extractions[1:]:
    for extraction in pass_extractions:
      if not any(
          _extractions_overlap(extraction, existing)
          for existing in merged_extractions
      ):
        merged_extractions.append(extraction)

  return merged_extractions


def _extractions_overlap(
    extraction1: data.Extraction, extraction2: data.Extraction
) -> bool:
  """Checks if two extractions overlap based on their character intervals."""
  if extraction1.char_interval is None or extraction2.char_interval is None:
    return False

  start1, end1 = (
      extraction1.char_interval.start_pos,
      extraction1.char_interval.end_pos,
  )
  start2, end2 = (
      extraction2.char_interval.start_pos,
      extraction2.char_interval.end_pos,
  )

  if start1 is None or end1 is None or start2 is None or end2 is None:
    return False

  return start1 < end2 and start2 < end1


def _generate_document_id() -> str:
  return f"doc_{uuid.uuid4().hex[:8]}"


class _DocumentArena:
  """Input documents of one run, addressed by their position.

  Ids are fixed when the arena is built: the caller's `document_id` if set,
  otherwise a generated one. Input documents are never modified.
  """

  def __init__(self, documents: Iterable[data.Document]):
    self.documents = list(documents)
    self.document_ids: list[str] = []
    seen_ids = set()
    for document in self.documents:
      if document.document_id is not None:
        if document.document_id in seen_ids:
          raise DocumentRepeatError(
              f"Document id {document.document_id} is already visited."
          )
        document_id = document.document_id
      else:
        document_id = _generate_document_id()
      seen_ids.add(document_id)
      self.document_ids.append(document_id)

  def __len__(self) -> int:
    return len(self.documents)

  def chunks(self, max_char_buffer: int) -> list[chunking.TextChunk]:
    """Chunks every document, in document order."""
    all_chunks = []
    for index, document in enumerate(self.documents):
      all_chunks.extend(
          chunking.ChunkIterator(
              document.text,
              max_char_buffer,
              document_index=index,
              additional_context=document.additional_context,
          )
      )
    return all_chunks


@dataclasses.dataclass
class PassStats:
  """Counters for one extraction pass.

  Attributes:
    pass_number: 1-based pass number.
    chunks: Chunks sent to the model.
    empty_outputs: Chunks for which the model returned no output.
    parse_failures: Chunks whose output could not be parsed (only counted
      when parse errors are suppressed).
    resolved: Extractions parsed from model outputs.
    aligned: Resolved extractions grounded in their chunk.
  """

  pass_number: int
  chunks: int = 0
  empty_outputs: int = 0
  parse_failures: int = 0
  resolved: int = 0
  aligned: int = 0

  @property
  def unaligned(self) -> int:
    return self.resolved - self.aligned


class Annotator:
  """Annotates documents with extractions using a language model."""

  def __init__(
      self,
      language_model: inference.BaseLanguageModel,
      prompt_template: prompting.PromptTemplateStructured,
      format_type: data.FormatType = data.FormatType.JSON,
      attribute_suffix: str = schema.ATTRIBUTE_SUFFIX,
      fence_output: bool = True,
  ):
    """Initializes Annotator.

    Args:
      language_model: Model which performs language model inference.
      prompt_template: Structured prompt template where the answer is expected
        to be formatted text (YAML or JSON).
      format_type: The format type for the output (YAML or JSON).
      attribute_suffix: Suffix to append to attribute keys in the output.
      fence_output: Whether example answers in the prompt are fenced.
    """
    self._language_model = language_model
    self._prompt_generator = prompting.QAPromptGenerator(
        prompt_template,
        format_type=format_type,
        attribute_suffix=attribute_suffix,
        fence_output=fence_output,
    )
    self.last_pass_stats: list[PassStats] = []

    logging.debug(
        "Initialized Annotator with prompt:\n%s", self._prompt_generator
    )

  async def async_annotate_documents(
      self,
      documents: Iterable[data.Document],
      resolver: resolver_lib.AbstractResolver | None = None,
      max_char_buffer: int = 200,
      batch_length: int = 1,
      debug: bool = True,
      extraction_passes: int = 1,
      enable_fuzzy_alignment: bool = True,
      fuzzy_alignment_threshold: float = (
          resolver_lib.FUZZY_ALIGNMENT_MIN_THRESHOLD
      ),
      suppress_parse_errors: bool = False,
      **kwargs,
  ) -> list[data.AnnotatedDocument]:
    """Annotates a sequence of documents with extractions.

    All chunks of all documents are collected first. Each pass then sends
    them to the model in batches of `batch_length`; batches may mix chunks of
    different documents. With several passes, the per-document results are
    merged so that no two extractions overlap, earlier passes winning.

    Args:
      documents: Documents to annotate. Caller supplied document ids must be
        unique.
      resolver: Resolver used to parse and align model output. Defaults to a
        fenced JSON resolver.
      max_char_buffer: Max number of characters per chunk.
      batch_length: Number of chunks to process in a single batch.
      debug: Whether to show progress.
      extraction_passes: Number of sweeps over all chunks. Values > 1 improve
        recall at the cost of more model calls.
      enable_fuzzy_alignment: Whether to fall back to fuzzy alignment.
      fuzzy_alignment_threshold: Minimum token overlap for a fuzzy match.
      suppress_parse_errors: Treat unparseable model output as producing no
        extractions instead of raising.
      **kwargs: Additional arguments passed to the language model.

    Returns:
      One AnnotatedDocument per input document, in input order.

    Raises:
      ValueError: If extraction_passes, batch_length or max_char_buffer is
        smaller than 1.
      DocumentRepeatError: If two documents share a document id.
      resolver_lib.ResolverParsingError: If a model output cannot be parsed
        and parse errors are not suppressed.
      inference.InferenceOutputError: If the model answers a batch with the
        wrong number of outputs.
    """
    if extraction_passes < 1:
      raise ValueError(
          f"extraction_passes must be at least 1, got {extraction_passes}."
      )
    if batch_length < 1:
      raise ValueError(f"batch_length must be at least 1, got {batch_length}.")
    if resolver is None:
      resolver = resolver_lib.Resolver()

    logging.info("Starting document annotation.")
    arena = _DocumentArena(documents)
    chunks = arena.chunks(max_char_buffer)
    if not arena:
      logging.warning("No documents to process.")

    self.last_pass_stats = []
    extractions_by_pass: list[list[list[data.Extraction]]] = []
    for pass_num in range(extraction_passes):
      if extraction_passes > 1:
        logging.info(
            "Starting extraction pass %d of %d", pass_num + 1, extraction_passes
        )
      stats = PassStats(pass_number=pass_num + 1)
      extractions_by_pass.append(
          await self._annotate_chunks(
              chunks,
              len(arena),
              resolver,
              batch_length,
              stats,
              pass_info=(
                  f"{pass_num + 1}/{extraction_passes}"
                  if extraction_passes > 1
                  else None
              ),
              debug=debug,
              enable_fuzzy_alignment=enable_fuzzy_alignment,
              fuzzy_alignment_threshold=fuzzy_alignment_threshold,
              suppress_parse_errors=suppress_parse_errors,
              **kwargs,
          )
      )
      self.last_pass_stats.append(stats)
      logging.info(
          "Pass %d: %d chunks, %d empty outputs, %d parse failures, %d of %d"
          " extractions aligned.",
          stats.pass_number,
          stats.chunks,
          stats.empty_outputs,
          stats.parse_failures,
          stats.aligned,
          stats.resolved,
      )

    annotated_documents = []
    for index, document in enumerate(arena.documents):
      document_id = arena.document_ids[index]
      all_pass_extractions = [
          pass_extractions[index] for pass_extractions in extractions_by_pass
      ]
      merged_extractions = _merge_non_overlapping_extractions(
          all_pass_extractions
      )
      if extraction_passes > 1:
        logging.info(
            "Document %s: Merged %d extractions from %d passes into "
            "%d non-overlapping extractions.",
            document_id,
            sum(len(extractions) for extractions in all_pass_extractions),
            extraction_passes,
            len(merged_extractions),
        )

      annotated_doc = data.AnnotatedDocument(
          document_id=document_id,
          extractions=merged_extractions,
          text=document.text,
      )
      annotated_doc.tokenized_text = tokenizer.tokenize(document.text)
      annotated_documents.append(annotated_doc)

    logging.info("Document annotation completed.")
    return annotated_documents

  async def _annotate_chunks(
      self,
      chunks: Sequence[chunking.TextChunk],
      num_documents: int,
      resolver: resolver_lib.AbstractResolver,
      batch_length: int,
      stats: PassStats,
      pass_info: str | None,
      debug: bool,
      enable_fuzzy_alignment: bool,
      fuzzy_alignment_threshold: float,
      suppress_parse_errors: bool,
      **kwargs,
  ) -> list[list[data.Extraction]]:
    """Runs one pass over all chunks.

    Returns:
      Aligned extractions per arena index, each list in chunk order.
    """
    extractions_by_document: list[list[data.Extraction]] = [
        [] for _ in range(num_documents)
    ]
    batches = list(chunking.make_batches_of_textchunk(chunks, batch_length))
    model_info = progress.get_model_info(self._language_model)
    progress_bar = progress.create_extraction_progress_bar(
        batches, model_info=model_info, pass_info=pass_info, disable=not debug
    )
    chars_processed = 0

    for index, batch in enumerate(progress_bar):
      logging.info("Processing batch %d with length %d", index, len(batch))
      batch_prompts = [
          self._prompt_generator.render(
              question=text_chunk.chunk_text,
              additional_context=text_chunk.additional_context,
          )
          for text_chunk in batch
      ]

      try:
        batch_scored_outputs = await self._language_model.async_infer(
            batch_prompts, **kwargs
        )
      except exceptions.InferenceRuntimeError as e:
        logging.warning("Model call for batch %d failed: %s", index, e)
        batch_scored_outputs = [[inference.EMPTY_OUTPUT] for _ in batch]

      if len(batch_scored_outputs) != len(batch):
        raise inference.InferenceOutputError(
            f"Expected {len(batch)} outputs for batch {index}, got"
            f" {len(batch_scored_outputs)}."
        )

      for text_chunk, scored_outputs in zip(batch, batch_scored_outputs):
        extractions_by_document[text_chunk.document_index].extend(
            self._resolve_chunk(
                text_chunk,
                scored_outputs,
                resolver,
                stats,
                enable_fuzzy_alignment=enable_fuzzy_alignment,
                fuzzy_alignment_threshold=fuzzy_alignment_threshold,
                suppress_parse_errors=suppress_parse_errors,
            )
        )
        chars_processed += len(text_chunk.chunk_text)

      progress_bar.set_description(
          progress.format_extraction_progress(
              model_info, pass_info, processed_chars=chars_processed
          )
      )

    progress_bar.close()
    return extractions_by_document

  def _resolve_chunk(
      self,
      text_chunk: chunking.TextChunk,
      scored_outputs: Sequence[inference.ScoredOutput],
      resolver: resolver_lib.AbstractResolver,
      stats: PassStats,
      enable_fuzzy_alignment: bool,
      fuzzy_alignment_threshold: float,
      suppress_parse_errors: bool,
  ) -> list[data.Extraction]:
    """Parses and aligns the top model output for one chunk."""
    logging.debug("Processing chunk: %s", text_chunk)
    stats.chunks += 1

    top_output = scored_outputs[0].output if scored_outputs else None
    if not top_output:
      stats.empty_outputs += 1
      logging.warning(
          "No model output for chunk at char %d of document %d.",
          text_chunk.char_offset,
          text_chunk.document_index,
      )
      return []
    logging.debug("Top inference result: %s", top_output)

    try:
      resolved_extractions = resolver.resolve(top_output)
    except resolver_lib.ResolverParsingError:
      if not suppress_parse_errors:
        raise
      stats.parse_failures += 1
      logging.exception(
          "Skipping unparseable output for chunk at char %d of document %d.",
          text_chunk.char_offset,
          text_chunk.document_index,
      )
      return []

    aligned_extractions = list(
        resolver.align(
            resolved_extractions,
            text_chunk.chunk_text,
            text_chunk.token_offset,
            text_chunk.char_offset,
            enable_fuzzy_alignment=enable_fuzzy_alignment,
            fuzzy_alignment_threshold=fuzzy_alignment_threshold,
        )
    )
    stats.resolved += len(resolved_extractions)
    stats.aligned += len(aligned_extractions)
    return aligned_extractions

  def annotate_documents(
      self,
      documents: Iterable[data.Document],
      resolver: resolver_lib.AbstractResolver | None = None,
      **kwargs,
  ) -> list[data.AnnotatedDocument]:
    """Synchronous wrapper of `async_annotate_documents`.

    Must not be called from a running event loop.

    Args:
      documents: Documents to annotate.
      resolver: Resolver to use for extracting information from text.
      **kwargs: Arguments of `async_annotate_documents`.

    Returns:
      One AnnotatedDocument per input document, in input order.
    """
    return asyncio.run(
        self.async_annotate_documents(documents, resolver, **kwargs)
    )

  async def async_annotate_text(
      self,
      text: str,
      resolver: resolver_lib.AbstractResolver | None = None,
      max_char_buffer: int = 200,
      additional_context: str | None = None,
      debug: bool = True,
      **kwargs,
  ) -> data.AnnotatedDocument:
    """Annotates a single text.

    Args:
      text: Source text to annotate.
      resolver: Resolver to use for extracting information from text.
      max_char_buffer: Max number of characters per chunk.
      additional_context: Additional context to supplement prompt instructions.
      debug: Whether to show progress and a summary.
      **kwargs: Arguments of `async_annotate_documents`.

    Returns:
      Resolved annotations from text for document.
    """
    start_time = time.time() if debug else None

    annotations = await self.async_annotate_documents(
        [data.Document(text=text, additional_context=additional_context)],
        resolver,
        max_char_buffer=max_char_buffer,
        debug=debug,
        **kwargs,
    )
    assert (
        len(annotations) == 1
    ), f"Expected 1 annotation but got {len(annotations)} annotations."
    annotated_doc = annotations[0]

    if debug and annotated_doc.extractions:
      elapsed_time = time.time() - start_time if start_time else None
      progress.print_extraction_summary(
          len(annotated_doc.extractions),
          len(set(e.extraction_class for e in annotated_doc.extractions)),
          elapsed_time=elapsed_time,
          chars_processed=len(text),
          num_chunks=self.last_pass_stats[0].chunks,
      )

    return annotated_doc

  def annotate_text(
      self,
      text: str,
      resolver: resolver_lib.AbstractResolver | None = None,
      **kwargs,
  ) -> data.AnnotatedDocument:
    """Synchronous wrapper of `async_annotate_text`."""
    return asyncio.run(self.async_annotate_text(text, resolver, **kwargs))
