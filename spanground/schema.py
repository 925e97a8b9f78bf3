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

"""Keys of the model output wire format.

A model answer looks like::

  {"extractions": [
      {"person": "John Smith", "person_attributes": {"age": "30"}},
      ...
  ]}

Each record groups an extraction and its attributes under sibling keys. The
attributes key is the class key plus a suffix.
"""

from __future__ import annotations

import dataclasses
import enum

EXTRACTIONS_KEY = "extractions"  # Shared key for extraction arrays in JSON/YAML
ATTRIBUTE_SUFFIX = "_attributes"


class KeyKind(enum.Enum):
  """What a key inside one output record stands for."""

  CLASS_FIELD = "class_field"
  ATTRIBUTES_FIELD = "attributes_field"


@dataclasses.dataclass(frozen=True)
class RecordKey:
  """A classified record key.

  Attributes:
    kind: Whether the key holds extraction text or attributes.
    extraction_class: The class the key belongs to. For attributes fields this
      is the key without its suffix.
  """

  kind: KeyKind
  extraction_class: str


def classify_key(
    key: str, attribute_suffix: str = ATTRIBUTE_SUFFIX
) -> RecordKey:
  """Classifies a record key as a class field or an attributes field.

  Args:
    key: A key of one output record.
    attribute_suffix: Suffix marking attributes keys.

  Returns:
    The classified key.
  """
  if attribute_suffix and key.endswith(attribute_suffix):
    return RecordKey(
        kind=KeyKind.ATTRIBUTES_FIELD,
        extraction_class=key[: -len(attribute_suffix)],
    )
  return RecordKey(kind=KeyKind.CLASS_FIELD, extraction_class=key)


def attributes_key(
    extraction_class: str, attribute_suffix: str = ATTRIBUTE_SUFFIX
) -> str:
  """Returns the key holding the attributes of `extraction_class`."""
  return f"{extraction_class}{attribute_suffix}"
