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

"""Conversion between AnnotatedDocument and JSON-ready dicts."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
import dataclasses
import enum
import numbers
from typing import Any

from spanground import data
from spanground import tokenizer


def enum_asdict_factory(items: Iterable[tuple[str, Any]]) -> dict[str, Any]:
  """Custom dict_factory for dataclasses.asdict.

  Converts enum values to their underlying values, converts integral numeric
  types to int, and skips any field whose name starts with an underscore.

  Args:
    items: An iterable of (key, value) pairs from fields of a dataclass.

  Returns:
    A mapping of field names to their converted values.
  """
  result: dict[str, Any] = {}
  for key, value in items:
    if key.startswith("_"):
      continue
    if isinstance(value, enum.Enum):
      result[key] = value.value
    elif isinstance(value, numbers.Integral) and not isinstance(value, bool):
      result[key] = int(value)
    else:
      result[key] = value
  return result


def annotated_document_to_dict(
    adoc: data.AnnotatedDocument | None,
) -> dict[str, Any]:
  """Converts an AnnotatedDocument into a JSON-ready dict.

  Intervals become nested dicts and alignment statuses their string values.
  The cached tokenization is not included; it is recomputed from `text` on
  demand.

  Args:
    adoc: The AnnotatedDocument object to convert.

  Returns:
    A dict representing the AnnotatedDocument, empty for None.
  """
  if not adoc:
    return {}
  return dataclasses.asdict(adoc, dict_factory=enum_asdict_factory)


def _dict_to_extraction(extraction_dict: Mapping[str, Any]) -> data.Extraction:
  fields = dict(extraction_dict)

  token_interval = fields.get("token_interval")
  fields["token_interval"] = (
      tokenizer.TokenInterval(**token_interval) if token_interval else None
  )

  char_interval = fields.get("char_interval")
  fields["char_interval"] = (
      data.CharInterval(**char_interval) if char_interval else None
  )

  status = fields.get("alignment_status")
  fields["alignment_status"] = (
      data.AlignmentStatus(status) if status else None
  )
  return data.Extraction(**fields)


def dict_to_annotated_document(
    adoc_dic: Mapping[str, Any],
) -> data.AnnotatedDocument:
  """Converts a dict produced by `annotated_document_to_dict` back.

  The input mapping is not modified.

  Args:
    adoc_dic: A Python dict representing an AnnotatedDocument.

  Returns:
    An AnnotatedDocument object.
  """
  if not adoc_dic:
    return data.AnnotatedDocument()

  extractions = adoc_dic.get("extractions")
  return data.AnnotatedDocument(
      document_id=adoc_dic.get("document_id"),
      text=adoc_dic.get("text"),
      extractions=(
          None
          if extractions is None
          else [_dict_to_extraction(e) for e in extractions]
      ),
  )
