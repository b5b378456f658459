from __future__ import annotations

import json
import unittest
import uuid
from unittest import IsolatedAsyncioTestCase, mock

from food_review.config import Settings
from food_review.services.catalog import PendingFood
from food_review.services.normalization import (
    ClassificationError,
    NormalizationClient,
    build_user_prompt,
    parse_normalization_response,
)
from food_review.services.openai_responses import OpenAIClientError, _extract_response_text


def _foods(*names: str) -> list[PendingFood]:
    return [PendingFood(id=uuid.uuid4(), name=name) for name in names]


class ParseNormalizationResponseTestCase(unittest.TestCase):
    def test_defaults_missing_fields(self):
        results = parse_normalization_response("[{}]", expected_count=1)

        self.assertEqual(len(results), 1)
        self.assertIsNone(results[0].normalized_name)
        self.assertIsNone(results[0].quantity)
        self.assertIsNone(results[0].unit)
        self.assertFalse(results[0].is_gibberish)

    def test_parses_string_quantities(self):
        payload = json.dumps(
            [
                {"normalizedName": "Mjölk", "quantity": "1 1/2", "unit": "dl", "isGibberish": False},
                {"normalizedName": "Smör", "quantity": "1/0", "unit": "", "isGibberish": None},
            ]
        )

        first, second = parse_normalization_response(payload, expected_count=2)

        self.assertEqual(first.quantity, 1.5)
        self.assertEqual(first.unit, "dl")
        self.assertIsNone(second.quantity)
        self.assertIsNone(second.unit)
        self.assertFalse(second.is_gibberish)

    def test_rejects_length_mismatch(self):
        with self.assertRaises(ClassificationError):
            parse_normalization_response('[{"normalizedName": "Lök"}]', expected_count=2)

    def test_rejects_non_object_entries(self):
        with self.assertRaises(ClassificationError):
            parse_normalization_response('["Lök"]', expected_count=1)

    def test_rejects_empty_and_non_json_output(self):
        for text in (None, "", "Jag kan inte hjälpa till med det."):
            with self.assertRaises(ClassificationError):
                parse_normalization_response(text, expected_count=1)

    def test_accepts_fenced_and_wrapped_arrays(self):
        fenced = '```json\n[{"normalizedName": "Lök"}]\n```'
        wrapped = '{"results": [{"normalizedName": "Lök"}]}'
        chatty = 'Här är resultatet: [{"normalizedName": "Lök"}] Hoppas det hjälper!'

        for text in (fenced, wrapped, chatty):
            (result,) = parse_normalization_response(text, expected_count=1)
            self.assertEqual(result.normalized_name, "Lök")

    def test_user_prompt_lists_foods_in_order(self):
        prompt = build_user_prompt(_foods("burk tomater", "klyfta vitlök"))

        self.assertIn('1. "burk tomater"', prompt)
        self.assertIn('2. "klyfta vitlök"', prompt)


class ExtractResponseTextTestCase(unittest.TestCase):
    def test_prefers_output_text(self):
        response = mock.Mock(output_text="  [] ")
        self.assertEqual(_extract_response_text(response), "[]")

    def test_joins_output_blocks(self):
        response = {"output": [{"content": [{"text": "[{"}, {"text": "}]"}]}]}
        self.assertEqual(_extract_response_text(response), "[{}]")


class NormalizationClientTestCase(IsolatedAsyncioTestCase):
    def setUp(self):
        self.settings = Settings(openai_api_key="sk-test", openai_food_review_model="gpt-test")

    async def test_empty_batch_skips_model_call(self):
        call = mock.Mock()
        with mock.patch("food_review.services.normalization.call_openai_responses", new=call):
            results = await NormalizationClient(self.settings).normalize([])

        self.assertEqual(results, [])
        call.assert_not_called()

    async def test_normalize_returns_results_in_order(self):
        foods = _foods("2 dl vatten", "asdfghjk")
        text = json.dumps(
            [
                {"normalizedName": "Vatten", "quantity": 2, "unit": "dl", "isGibberish": False},
                {"normalizedName": None, "isGibberish": True},
            ]
        )
        call = mock.Mock(return_value=text)
        with mock.patch("food_review.services.normalization.call_openai_responses", new=call):
            results = await NormalizationClient(self.settings).normalize(foods)

        self.assertEqual([r.normalized_name for r in results], ["Vatten", None])
        self.assertTrue(results[1].is_gibberish)
        kwargs = call.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-test")
        self.assertIn('"2 dl vatten"', kwargs["user_prompt"])

    async def test_transport_errors_become_classification_errors(self):
        call = mock.Mock(side_effect=OpenAIClientError("Timed out while waiting for the OpenAI model"))
        with mock.patch("food_review.services.normalization.call_openai_responses", new=call):
            with self.assertRaises(ClassificationError):
                await NormalizationClient(self.settings).normalize(_foods("lök"))


if __name__ == "__main__":
    unittest.main()
