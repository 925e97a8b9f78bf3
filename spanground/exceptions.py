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

"""Root exceptions for SpanGround.

Modules define their own specific errors (for example
`resolver.ResolverParsingError`) on top of these.
"""

from __future__ import annotations

__all__ = [
    "SpanGroundError",
    "InferenceError",
    "InferenceConfigError",
    "InferenceRuntimeError",
]


class SpanGroundError(Exception):
  """Base exception for all SpanGround errors."""


class InferenceError(SpanGroundError):
  """Base exception for errors raised around the model collaborator."""


class InferenceConfigError(InferenceError):
  """The model collaborator is misconfigured and cannot serve prompts."""


class InferenceRuntimeError(InferenceError):
  """A single model call failed (transport error, timeout, bad response).

  Raised by model implementations. The batch fan-out in
  `inference.BaseLanguageModel.async_infer` converts it into an empty
  zero-score output for the failing prompt.
  """

  def __init__(
      self,
      message: str,
      *,
      original: BaseException | None = None,
      provider: str | None = None,
  ) -> None:
    """Initialize the runtime error.

    Args:
      message: Error message.
      original: Underlying exception raised by the model client.
      provider: Name of the model implementation that raised the error.
    """
    super().__init__(message)
    self.original = original
    self.provider = provider
