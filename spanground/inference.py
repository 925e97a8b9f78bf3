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

"""Interface to the language model that answers extraction prompts.

SpanGround does not talk to any model service itself. Callers plug in a
subclass of `BaseLanguageModel` that implements `infer`; the annotator drives
it through `async_infer`, which fans a batch out into one call per prompt and
joins the results back in batch order.
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Iterable, Sequence
import dataclasses
import textwrap

from absl import logging

from spanground import exceptions


@dataclasses.dataclass(frozen=True)
class ScoredOutput:
  """Scored output."""

  score: float | None = None
  output: str | None = None

  def __str__(self) -> str:
    score_str = '-' if self.score is None else f'{self.score:.2f}'
    if self.output is None:
      return f'Score: {score_str}\nOutput: None'
    formatted_lines = textwrap.indent(self.output, prefix='  ')
    return f'Score: {score_str}\nOutput:\n{formatted_lines}'


# Stands in for the answer of a prompt whose model call failed.
EMPTY_OUTPUT = ScoredOutput(score=0.0, output=None)


class InferenceOutputError(exceptions.SpanGroundError):
  """Raised when the model returns a malformed batch of outputs."""

  def __init__(self, message: str):
    self.message = message
    super().__init__(self.message)


class BaseLanguageModel(abc.ABC):
  """An abstract inference class for managing LLM inference.

  Attributes:
    max_workers: Maximum number of prompts of one batch in flight at once.
  """

  def __init__(self, max_workers: int = 10):
    """Initializes the BaseLanguageModel.

    Args:
      max_workers: Maximum number of concurrent per-prompt calls issued by
        `async_infer`.

    Raises:
      ValueError: If max_workers is smaller than 1.
    """
    if max_workers < 1:
      raise ValueError(f'max_workers must be at least 1, got {max_workers}.')
    self.max_workers = max_workers

  @abc.abstractmethod
  def infer(
      self, batch_prompts: Sequence[str], **kwargs
  ) -> Iterable[Sequence[ScoredOutput]]:
    """Implements language model inference.

    Args:
      batch_prompts: Batch of inputs for inference. Single element list can be
        used for a single input.
      **kwargs: Additional arguments for inference, like temperature and
        max_decode_steps.

    Returns:
      For each prompt, its outputs sorted by descending score.
    """

  def _infer_single(self, prompt: str, **kwargs) -> list[ScoredOutput]:
    """Runs `infer` for one prompt and returns its outputs."""
    outputs = list(self.infer([prompt], **kwargs))
    if len(outputs) != 1:
      raise InferenceOutputError(
          f'Expected outputs for 1 prompt, got {len(outputs)}.'
      )
    return list(outputs[0])

  async def async_infer(
      self, batch_prompts: Sequence[str], **kwargs
  ) -> list[list[ScoredOutput]]:
    """Runs one model call per prompt concurrently and joins the results.

    Each prompt is served on a worker thread; at most `max_workers` calls are
    in flight. The returned list follows the order of `batch_prompts`
    regardless of completion order. A prompt whose call raises gets
    `[EMPTY_OUTPUT]`; the other prompts of the batch are unaffected. Only
    `exceptions.InferenceConfigError` propagates.

    Args:
      batch_prompts: Prompts of one batch.
      **kwargs: Additional arguments forwarded to `infer`.

    Returns:
      For each prompt, its outputs sorted by descending score.
    """
    semaphore = asyncio.Semaphore(self.max_workers)

    async def _run(index: int, prompt: str) -> list[ScoredOutput]:
      async with semaphore:
        try:
          return await asyncio.to_thread(self._infer_single, prompt, **kwargs)
        except exceptions.InferenceConfigError:
          raise
        except Exception as e:
          logging.warning(
              'Model call for prompt %d of the batch failed: %r', index, e
          )
          return [EMPTY_OUTPUT]

    return list(
        await asyncio.gather(
            *(_run(i, prompt) for i, prompt in enumerate(batch_prompts))
        )
    )
