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

import asyncio
import collections
import json
import textwrap
import threading

from absl.testing import absltest
from absl.testing import parameterized

from spanground import annotation
from spanground import data
from spanground import exceptions
from spanground import inference
from spanground import prompting
from spanground import resolver as resolver_lib
from spanground import tokenizer


def _fenced_json(*records):
  return "```json\n" + json.dumps({"extractions": list(records)}) + "\n```"


def _question(prompt):
  """Returns the chunk text a rendered prompt asks about."""
  return prompt.rsplit("Q: ", 1)[1].removesuffix("\nA: ")


class FakeLanguageModel(inference.BaseLanguageModel):
  """Answers prompts from a table keyed by the chunk text.

  A list value holds one answer per call, so the n-th extraction pass gets the
  n-th answer. An exception value is raised instead of answering.
  """

  def __init__(self, answers, max_workers=10):
    super().__init__(max_workers=max_workers)
    self.answers = answers
    self.prompts = []
    self.calls_per_question = collections.Counter()
    self._lock = threading.Lock()

  def infer(self, batch_prompts, **kwargs):
    outputs = []
    for prompt in batch_prompts:
      question = _question(prompt)
      with self._lock:
        self.prompts.append(prompt)
        call_number = self.calls_per_question[question]
        self.calls_per_question[question] += 1
      answer = self.answers[question]
      if isinstance(answer, list):
        answer = answer[call_number]
      if isinstance(answer, Exception):
        raise answer
      outputs.append([inference.ScoredOutput(score=1.0, output=answer)])
    return outputs


def _annotator(model):
  return annotation.Annotator(
      language_model=model,
      prompt_template=prompting.PromptTemplateStructured(
          description="Extract entities."
      ),
  )


class AnnotatorTest(absltest.TestCase):

  def test_annotate_text_single_chunk(self):
    text = "Patient John Smith has diabetes."
    model = FakeLanguageModel({
        text: _fenced_json(
            {"person": "John Smith", "person_attributes": {"age": "30"}},
            {"condition": "diabetes"},
        )
    })

    result = _annotator(model).annotate_text(text, debug=False)

    self.assertEqual(result.text, text)
    self.assertStartsWith(result.document_id, "doc_")
    self.assertEqual(
        result.extractions,
        [
            data.Extraction(
                extraction_class="person",
                extraction_text="John Smith",
                char_interval=data.CharInterval(start_pos=8, end_pos=18),
                token_interval=tokenizer.TokenInterval(
                    start_index=1, end_index=3
                ),
                alignment_status=data.AlignmentStatus.MATCH_EXACT,
                extraction_index=0,
                group_index=0,
                attributes={"age": "30"},
            ),
            data.Extraction(
                extraction_class="condition",
                extraction_text="diabetes",
                char_interval=data.CharInterval(start_pos=23, end_pos=31),
                token_interval=tokenizer.TokenInterval(
                    start_index=4, end_index=5
                ),
                alignment_status=data.AlignmentStatus.MATCH_EXACT,
                extraction_index=1,
                group_index=1,
            ),
        ],
    )
    self.assertEqual(
        result.tokenized_text.tokens,
        ["Patient", "John", "Smith", "has", "diabetes", "."],
    )

  def test_annotate_text_multiple_chunks(self):
    text = "Roses are red. Violets are blue."
    model = FakeLanguageModel({
        "Roses are red. ": _fenced_json({"color": "red"}),
        "Violets are blu": _fenced_json({"flower": "Violets"}),
        "e.": _fenced_json(),
    })

    result = _annotator(model).annotate_text(
        text, max_char_buffer=15, batch_length=2, debug=False
    )

    self.assertEqual(
        [
            (e.extraction_text, e.char_interval, e.token_interval)
            for e in result.extractions
        ],
        [
            (
                "red",
                data.CharInterval(start_pos=10, end_pos=13),
                tokenizer.TokenInterval(start_index=2, end_index=3),
            ),
            (
                "Violets",
                data.CharInterval(start_pos=15, end_pos=22),
                tokenizer.TokenInterval(start_index=4, end_index=5),
            ),
        ],
    )
    for extraction in result.extractions:
      self.assertEqual(
          tokenizer.tokens_text(
              result.tokenized_text, extraction.token_interval
          ),
          extraction.extraction_text,
      )
    self.assertLen(model.prompts, 3)

  def test_unaligned_extractions_are_dropped(self):
    text = "Patient John Smith has diabetes."
    model = FakeLanguageModel({
        text: _fenced_json({"person": "Jane Roe"}, {"condition": "diabetes"})
    })
    annotator = _annotator(model)

    result = annotator.annotate_text(text, debug=False)

    self.assertEqual(
        [e.extraction_text for e in result.extractions], ["diabetes"]
    )
    self.assertEqual(result.extractions[0].extraction_index, 1)
    stats = annotator.last_pass_stats[0]
    self.assertEqual(stats.resolved, 2)
    self.assertEqual(stats.aligned, 1)
    self.assertEqual(stats.unaligned, 1)

  def test_fuzzy_alignment_options_are_applied(self):
    text = "Patient John Smith has diabetes."
    model = FakeLanguageModel(
        {text: _fenced_json({"finding": "John Smyth has diabetes"})}
    )
    annotator = _annotator(model)

    fuzzy = annotator.annotate_text(text, debug=False)
    strict = annotator.annotate_text(
        text, debug=False, enable_fuzzy_alignment=False
    )

    self.assertLen(fuzzy.extractions, 1)
    self.assertEqual(
        fuzzy.extractions[0].alignment_status, data.AlignmentStatus.MATCH_FUZZY
    )
    self.assertEmpty(strict.extractions)

  def test_additional_context_is_rendered(self):
    text = "John Smith."
    model = FakeLanguageModel({text: _fenced_json()})

    _annotator(model).annotate_text(
        text, additional_context="Names only.", debug=False
    )

    self.assertLen(model.prompts, 1)
    self.assertIn("Names only.", model.prompts[0])
    self.assertStartsWith(model.prompts[0], "Extract entities.")

  def test_yaml_resolver(self):
    text = "Patient John Smith has diabetes."
    model = FakeLanguageModel({
        text: textwrap.dedent("""\
            ```yaml
            extractions:
            - person: John Smith
            ```""")
    })

    result = _annotator(model).annotate_text(
        text,
        resolver=resolver_lib.Resolver(format_type=data.FormatType.YAML),
        debug=False,
    )

    self.assertEqual(
        [e.extraction_text for e in result.extractions], ["John Smith"]
    )

  def test_empty_text(self):
    model = FakeLanguageModel({})
    annotator = _annotator(model)

    result = annotator.annotate_text("", debug=False)

    self.assertEqual(result.extractions, [])
    self.assertEmpty(model.prompts)
    self.assertEqual(annotator.last_pass_stats[0].chunks, 0)


class AnnotatorFailureTest(parameterized.TestCase):

  @parameterized.named_parameters(
      ("none", None),
      ("empty_string", ""),
  )
  def test_empty_model_output_contributes_nothing(self, output):
    model = FakeLanguageModel({
        "Roses are red. ": _fenced_json({"color": "red"}),
        "Violets are blu": output,
        "e.": _fenced_json(),
    })
    annotator = _annotator(model)

    result = annotator.annotate_text(
        "Roses are red. Violets are blue.", max_char_buffer=15, debug=False
    )

    self.assertEqual([e.extraction_text for e in result.extractions], ["red"])
    self.assertEqual(annotator.last_pass_stats[0].empty_outputs, 1)
    self.assertEqual(annotator.last_pass_stats[0].chunks, 3)

  def test_failed_model_call_degrades_to_no_extractions(self):
    model = FakeLanguageModel({
        "John Smith is here.": exceptions.InferenceRuntimeError("timeout"),
        "Jane Doe is here.": _fenced_json({"person": "Jane Doe"}),
    })
    annotator = _annotator(model)

    results = annotator.annotate_documents(
        [
            data.Document(text="John Smith is here.", document_id="a"),
            data.Document(text="Jane Doe is here.", document_id="b"),
        ],
        batch_length=2,
        debug=False,
    )

    self.assertEqual(results[0].extractions, [])
    self.assertEqual(
        [e.extraction_text for e in results[1].extractions], ["Jane Doe"]
    )
    self.assertEqual(annotator.last_pass_stats[0].empty_outputs, 1)

  def test_connection_error_is_isolated_to_its_prompt(self):
    model = FakeLanguageModel({
        "Mr Jones is here.": ConnectionError("connection reset"),
        "Jane Doe is here.": _fenced_json({"person": "Jane Doe"}),
    })
    annotator = _annotator(model)

    results = annotator.annotate_documents(
        [
            data.Document(text="Jane Doe is here.", document_id="a"),
            data.Document(text="Mr Jones is here.", document_id="b"),
        ],
        batch_length=2,
        debug=False,
    )

    self.assertEqual([r.document_id for r in results], ["a", "b"])
    self.assertEqual(
        [e.extraction_text for e in results[0].extractions], ["Jane Doe"]
    )
    self.assertEqual(results[1].extractions, [])
    self.assertEqual(annotator.last_pass_stats[0].empty_outputs, 1)

  def test_null_attribute_keeps_extraction_aligned(self):
    text = "Patient Smith has diabetes."
    model = FakeLanguageModel({
        text: _fenced_json(
            {"person": "Smith", "person_attributes": {"age": None}},
            {"condition": "diabetes"},
        )
    })

    result = _annotator(model).annotate_text(text, debug=False)

    self.assertEqual(
        [
            (e.extraction_text, e.char_interval, e.attributes)
            for e in result.extractions
        ],
        [
            ("Smith", data.CharInterval(start_pos=8, end_pos=13), {}),
            ("diabetes", data.CharInterval(start_pos=18, end_pos=26), None),
        ],
    )

  def test_parse_error_propagates_by_default(self):
    text = "John Smith."
    model = FakeLanguageModel({text: "```json\n{not json\n```"})

    with self.assertRaises(resolver_lib.ResolverParsingError):
      _annotator(model).annotate_text(text, debug=False)

  def test_parse_error_suppressed(self):
    model = FakeLanguageModel({
        "John Smith.": '{"other_key": "value"}',
        "Jane Doe.": _fenced_json({"person": "Jane Doe"}),
    })
    annotator = _annotator(model)

    results = annotator.annotate_documents(
        [data.Document(text="John Smith."), data.Document(text="Jane Doe.")],
        suppress_parse_errors=True,
        debug=False,
    )

    self.assertEqual(results[0].extractions, [])
    self.assertLen(results[1].extractions, 1)
    self.assertEqual(annotator.last_pass_stats[0].parse_failures, 1)

  def test_whole_batch_failure_degrades_to_no_extractions(self):

    class BrokenBatchLanguageModel(FakeLanguageModel):

      async def async_infer(self, batch_prompts, **kwargs):
        raise exceptions.InferenceRuntimeError("service unavailable")

    annotator = _annotator(BrokenBatchLanguageModel({}))

    result = annotator.annotate_text("John Smith.", debug=False)

    self.assertEqual(result.extractions, [])
    self.assertEqual(annotator.last_pass_stats[0].empty_outputs, 1)

  def test_wrong_number_of_batch_outputs_raises(self):

    class ShortBatchLanguageModel(FakeLanguageModel):

      async def async_infer(self, batch_prompts, **kwargs):
        return []

    with self.assertRaises(inference.InferenceOutputError):
      _annotator(ShortBatchLanguageModel({})).annotate_text(
          "John Smith.", debug=False
      )

  @parameterized.named_parameters(
      dict(testcase_name="zero_passes", kwargs={"extraction_passes": 0}),
      dict(testcase_name="zero_batch_length", kwargs={"batch_length": 0}),
      dict(testcase_name="zero_char_buffer", kwargs={"max_char_buffer": 0}),
  )
  def test_invalid_arguments_raise(self, kwargs):
    with self.assertRaises(ValueError):
      _annotator(FakeLanguageModel({})).annotate_documents(
          [data.Document(text="John Smith.")], debug=False, **kwargs
      )


class AnnotatorMultipleDocumentTest(parameterized.TestCase):

  _ANSWERS = {
      "John Smith has diabetes.": _fenced_json(
          {"person": "John Smith"}, {"condition": "diabetes"}
      ),
      "Jane Doe has asthma.": _fenced_json(
          {"person": "Jane Doe"}, {"condition": "asthma"}
      ),
      "Nobody here.": _fenced_json(),
  }

  @parameterized.named_parameters(
      dict(testcase_name="one_chunk_per_batch", batch_length=1),
      dict(testcase_name="documents_share_batch", batch_length=2),
      dict(testcase_name="single_batch", batch_length=10),
  )
  def test_annotate_documents(self, batch_length):
    documents = [
        data.Document(text="John Smith has diabetes.", document_id="first"),
        data.Document(text="Nobody here."),
        data.Document(text="Jane Doe has asthma."),
    ]
    model = FakeLanguageModel(self._ANSWERS)

    results = _annotator(model).annotate_documents(
        documents, batch_length=batch_length, debug=False
    )

    self.assertLen(results, 3)
    self.assertEqual(
        [r.text for r in results], [d.text for d in documents]
    )
    self.assertEqual(results[0].document_id, "first")
    self.assertRegex(results[1].document_id, r"^doc_[0-9a-f]{8}$")
    self.assertNotEqual(results[1].document_id, results[2].document_id)
    self.assertEqual(
        [[e.extraction_text for e in r.extractions] for r in results],
        [["John Smith", "diabetes"], [], ["Jane Doe", "asthma"]],
    )
    self.assertEqual(
        results[2].extractions[0].char_interval,
        data.CharInterval(start_pos=0, end_pos=8),
    )

  def test_input_documents_are_not_modified(self):
    document = data.Document(text="Jane Doe has asthma.")

    _annotator(FakeLanguageModel(self._ANSWERS)).annotate_documents(
        [document], debug=False
    )

    self.assertIsNone(document.document_id)

  def test_document_context_goes_to_its_own_prompts(self):
    model = FakeLanguageModel(self._ANSWERS)

    _annotator(model).annotate_documents(
        [
            data.Document(
                text="John Smith has diabetes.",
                additional_context="Cardiology note.",
            ),
            data.Document(text="Jane Doe has asthma."),
        ],
        batch_length=2,
        debug=False,
    )

    prompts = {_question(p): p for p in model.prompts}
    self.assertIn("Cardiology note.", prompts["John Smith has diabetes."])
    self.assertNotIn("Cardiology note.", prompts["Jane Doe has asthma."])

  def test_repeated_document_id_raises(self):
    documents = [
        data.Document(text="John Smith has diabetes.", document_id="same"),
        data.Document(text="Jane Doe has asthma.", document_id="same"),
    ]
    model = FakeLanguageModel(self._ANSWERS)

    with self.assertRaises(annotation.DocumentRepeatError):
      _annotator(model).annotate_documents(documents, debug=False)
    self.assertEmpty(model.prompts)

  def test_no_documents(self):
    self.assertEqual(
        _annotator(FakeLanguageModel({})).annotate_documents([], debug=False),
        [],
    )

  def test_async_annotate_documents(self):
    model = FakeLanguageModel(self._ANSWERS)

    results = asyncio.run(
        _annotator(model).async_annotate_documents(
            [data.Document(text="Jane Doe has asthma.")], debug=False
        )
    )

    self.assertLen(results, 1)
    self.assertLen(results[0].extractions, 2)


class AnnotatorMultiPassTest(absltest.TestCase):
  """Tests for multi-pass extraction functionality."""

  def test_multipass_first_pass_wins(self):
    text = "Dr. Smith prescribed Amoxicillin. Dr. Jones prescribed Ibuprofen."
    model = FakeLanguageModel({
        text: [
            _fenced_json({"medication": "Amoxicillin"}),
            _fenced_json(
                {"medication": "Amoxicillin"}, {"medication": "Ibuprofen"}
            ),
        ]
    })
    annotator = _annotator(model)

    result = annotator.annotate_text(text, extraction_passes=2, debug=False)

    self.assertEqual(
        [
            (e.extraction_text, e.char_interval.start_pos)
            for e in result.extractions
        ],
        [
            ("Amoxicillin", text.index("Amoxicillin")),
            ("Ibuprofen", text.index("Ibuprofen")),
        ],
    )
    self.assertEqual(model.calls_per_question[text], 2)
    self.assertLen(annotator.last_pass_stats, 2)

  def test_multipass_overlapping_keeps_earlier_pass(self):
    text = "Dr. Smith prescribed aspirin."
    model = FakeLanguageModel({
        text: [
            _fenced_json({"doctor": "Dr. Smith"}),
            _fenced_json({"patient": "Smith"}, {"medication": "aspirin"}),
        ]
    })

    result = _annotator(model).annotate_text(
        text, extraction_passes=2, debug=False
    )

    self.assertEqual(
        [(e.extraction_class, e.extraction_text) for e in result.extractions],
        [("doctor", "Dr. Smith"), ("medication", "aspirin")],
    )

  def test_multipass_merges_per_document(self):
    model = FakeLanguageModel({
        "John Smith has diabetes.": [
            _fenced_json({"person": "John Smith"}),
            _fenced_json({"condition": "diabetes"}),
        ],
        "Jane Doe has asthma.": [
            _fenced_json(),
            _fenced_json({"person": "Jane Doe"}),
        ],
    })

    results = _annotator(model).annotate_documents(
        [
            data.Document(text="John Smith has diabetes."),
            data.Document(text="Jane Doe has asthma."),
        ],
        extraction_passes=2,
        batch_length=2,
        debug=False,
    )

    self.assertEqual(
        [[e.extraction_text for e in r.extractions] for r in results],
        [["John Smith", "diabetes"], ["Jane Doe"]],
    )

  def test_multipass_empty_later_pass(self):
    text = "Test text."
    model = FakeLanguageModel(
        {text: [_fenced_json({"test": "Test"}), _fenced_json()]}
    )

    result = _annotator(model).annotate_text(
        text, extraction_passes=2, debug=False
    )

    self.assertLen(result.extractions, 1)
    self.assertEqual(result.extractions[0].extraction_class, "test")


class MultiPassHelperFunctionsTest(parameterized.TestCase):
  """Tests for multi-pass helper functions."""

  @parameterized.named_parameters(
      dict(
          testcase_name="empty_list",
          all_extractions=[],
          expected_texts=[],
      ),
      dict(
          testcase_name="single_pass",
          all_extractions=[[
              data.Extraction(
                  "class1", "text1", char_interval=data.CharInterval(0, 5)
              ),
              data.Extraction(
                  "class2", "text2", char_interval=data.CharInterval(10, 15)
              ),
          ]],
          expected_texts=["text1", "text2"],
      ),
      dict(
          testcase_name="non_overlapping_passes_concatenate",
          all_extractions=[
              [
                  data.Extraction(
                      "class1", "text1", char_interval=data.CharInterval(20, 25)
                  )
              ],
              [
                  data.Extraction(
                      "class2", "text2", char_interval=data.CharInterval(0, 5)
                  ),
                  data.Extraction(
                      "class3", "text3", char_interval=data.CharInterval(10, 15)
                  ),
              ],
          ],
          expected_texts=["text1", "text2", "text3"],
      ),
      dict(
          testcase_name="overlapping_passes_first_wins",
          all_extractions=[
              [
                  data.Extraction(
                      "class1", "text1", char_interval=data.CharInterval(0, 10)
                  )
              ],
              [
                  data.Extraction(
                      "class2", "text2", char_interval=data.CharInterval(5, 15)
                  ),
                  data.Extraction(
                      "class3", "text3", char_interval=data.CharInterval(20, 25)
                  ),
              ],
          ],
          expected_texts=["text1", "text3"],
      ),
      dict(
          testcase_name="unresolved_intervals_always_appended",
          all_extractions=[
              [
                  data.Extraction(
                      "class1", "text1", char_interval=data.CharInterval(0, 10)
                  )
              ],
              [
                  data.Extraction("class2", "text2"),
                  data.Extraction(
                      "class3",
                      "text3",
                      char_interval=data.CharInterval(None, 4),
                  ),
              ],
          ],
          expected_texts=["text1", "text2", "text3"],
      ),
      dict(
          testcase_name="third_pass_checked_against_second_pass",
          all_extractions=[
              [],
              [
                  data.Extraction(
                      "class1", "text1", char_interval=data.CharInterval(0, 10)
                  )
              ],
              [
                  data.Extraction(
                      "class2", "text2", char_interval=data.CharInterval(9, 12)
                  )
              ],
          ],
          expected_texts=["text1"],
      ),
  )
  def test_merge_non_overlapping_extractions(
      self, all_extractions, expected_texts
  ):
    result = annotation._merge_non_overlapping_extractions(all_extractions)

    self.assertEqual([e.extraction_text for e in result], expected_texts)

  def test_merged_result_has_no_mutual_overlaps(self):
    passes = [
        [
            data.Extraction("a", "a", char_interval=data.CharInterval(0, 4)),
            data.Extraction("b", "b", char_interval=data.CharInterval(10, 14)),
        ],
        [
            data.Extraction("c", "c", char_interval=data.CharInterval(3, 11)),
            data.Extraction("d", "d", char_interval=data.CharInterval(4, 10)),
        ],
        [
            data.Extraction("e", "e", char_interval=data.CharInterval(5, 7)),
            data.Extraction("f", "f", char_interval=data.CharInterval(14, 20)),
        ],
    ]

    result = annotation._merge_non_overlapping_extractions(passes)

    self.assertEqual([e.extraction_class for e in result], ["a", "b", "d", "f"])
    for i, first in enumerate(result):
      for second in result[i + 1 :]:
        self.assertFalse(annotation._extractions_overlap(first, second))

  @parameterized.named_parameters(
      dict(
          testcase_name="overlapping_intervals",
          ext1=data.Extraction(
              "class1", "text1", char_interval=data.CharInterval(0, 10)
          ),
          ext2=data.Extraction(
              "class2", "text2", char_interval=data.CharInterval(5, 15)
          ),
          expected=True,
      ),
      dict(
          testcase_name="contained_interval",
          ext1=data.Extraction(
              "class1", "text1", char_interval=data.CharInterval(0, 10)
          ),
          ext2=data.Extraction(
              "class2", "text2", char_interval=data.CharInterval(2, 4)
          ),
          expected=True,
      ),
      dict(
          testcase_name="non_overlapping_intervals",
          ext1=data.Extraction(
              "class1", "text1", char_interval=data.CharInterval(0, 5)
          ),
          ext2=data.Extraction(
              "class2", "text2", char_interval=data.CharInterval(10, 15)
          ),
          expected=False,
      ),
      dict(
          testcase_name="adjacent_intervals",
          ext1=data.Extraction(
              "class1", "text1", char_interval=data.CharInterval(0, 5)
          ),
          ext2=data.Extraction(
              "class2", "text2", char_interval=data.CharInterval(5, 10)
          ),
          expected=False,
      ),
      dict(
          testcase_name="none_interval_first",
          ext1=data.Extraction("class1", "text1", char_interval=None),
          ext2=data.Extraction(
              "class2", "text2", char_interval=data.CharInterval(5, 15)
          ),
          expected=False,
      ),
      dict(
          testcase_name="none_interval_second",
          ext1=data.Extraction(
              "class1", "text1", char_interval=data.CharInterval(0, 5)
          ),
          ext2=data.Extraction("class2", "text2", char_interval=None),
          expected=False,
      ),
      dict(
          testcase_name="both_none_intervals",
          ext1=data.Extraction("class1", "text1", char_interval=None),
          ext2=data.Extraction("class2", "text2", char_interval=None),
          expected=False,
      ),
  )
  def test_extractions_overlap(self, ext1, ext2, expected):
    self.assertEqual(annotation._extractions_overlap(ext1, ext2), expected)


if __name__ == "__main__":
  absltest.main()
