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

"""Terminal progress reporting for extraction runs."""

from __future__ import annotations

from typing import Any

import tqdm

# ANSI color codes for terminal output
BLUE = "\033[94m"
GREEN = "\033[92m"
CYAN = "\033[96m"
BOLD = "\033[1m"
RESET = "\033[0m"

_NAME = f"{BLUE}{BOLD}SpanGround{RESET}"


def get_model_info(language_model: Any) -> str | None:
  """Returns a short description of the model, if it exposes one."""
  for attribute in ("model_id", "model_url"):
    value = getattr(language_model, attribute, None)
    if isinstance(value, str) and value:
      return value
  return None


def format_extraction_progress(
    model_info: str | None,
    pass_info: str | None = None,
    processed_chars: int | None = None,
) -> str:
  """Formats the extraction progress bar description.

  Args:
    model_info: Optional model description.
    pass_info: Optional pass position, e.g. "2/3".
    processed_chars: Characters sent to the model so far in this pass.

  Returns:
    Formatted description string.
  """
  if model_info:
    desc = f"{_NAME}: model={GREEN}{model_info}{RESET}"
  else:
    desc = f"{_NAME}: Processing"
  if pass_info:
    desc += f", pass={GREEN}{pass_info}{RESET}"
  if processed_chars is not None:
    desc += f", processed={GREEN}{processed_chars:,}{RESET} chars"
  return desc


def create_extraction_progress_bar(
    iterable: Any,
    model_info: str | None = None,
    pass_info: str | None = None,
    disable: bool = False,
) -> tqdm.tqdm:
  """Create a styled progress bar over the batches of one pass.

  Args:
    iterable: The batches to wrap.
    model_info: Optional model information to display.
    pass_info: Optional pass position to display.
    disable: Whether to disable the progress bar.

  Returns:
    A configured tqdm progress bar.
  """
  return tqdm.tqdm(
      iterable,
      desc=format_extraction_progress(model_info, pass_info),
      bar_format="{desc} [{elapsed}]",
      disable=disable,
      dynamic_ncols=True,
  )


def print_extraction_summary(
    num_extractions: int,
    unique_classes: int,
    elapsed_time: float | None = None,
    chars_processed: int | None = None,
    num_chunks: int | None = None,
) -> None:
  """Print a styled extraction summary with optional performance metrics.

  Args:
    num_extractions: Total number of extractions.
    unique_classes: Number of unique extraction classes.
    elapsed_time: Optional elapsed time in seconds.
    chars_processed: Optional number of characters processed.
    num_chunks: Optional number of chunks processed.
  """
  print(
      f"{GREEN}✓{RESET} Extracted {BOLD}{num_extractions}{RESET} entities "
      f"({BOLD}{unique_classes}{RESET} unique types)",
      flush=True,
  )

  if elapsed_time is None:
    return
  metrics = [f"Time: {BOLD}{elapsed_time:.2f}s{RESET}"]
  if chars_processed is not None and elapsed_time > 0:
    speed = chars_processed / elapsed_time
    metrics.append(f"Speed: {BOLD}{speed:,.0f}{RESET} chars/sec")
  if num_chunks is not None:
    metrics.append(f"Chunks: {BOLD}{num_chunks}{RESET}")
  for metric in metrics:
    print(f"  {CYAN}•{RESET} {metric}", flush=True)
