from __future__ import annotations

import asyncio
import json
import logging
import re
from textwrap import dedent
from time import perf_counter
from typing import Any, List, Sequence

from pydantic import ValidationError

from ..config import Settings, get_settings
from ..schemas import NormalizationResult
from .catalog import PendingFood
from .openai_responses import OpenAIClientError, call_openai_responses

logger = logging.getLogger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class ClassificationError(RuntimeError):
    """The classification service failed or returned an unusable payload for a batch."""


class NormalizationClient:
    """Batches pending food names through the classification model."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    async def normalize(self, foods: Sequence[PendingFood]) -> List[NormalizationResult]:
        if not foods:
            return []
        started = perf_counter()
        try:
            text = await asyncio.to_thread(
                call_openai_responses,
                model=self.settings.openai_food_review_model,
                system_prompt=build_system_prompt(),
                user_prompt=build_user_prompt(foods),
                max_output_tokens=self.settings.openai_food_review_max_output_tokens,
                top_p=self.settings.openai_food_review_top_p,
                reasoning_effort=self.settings.openai_food_review_reasoning_effort,
            )
        except OpenAIClientError as exc:
            raise ClassificationError(str(exc)) from exc
        logger.info(
            "Food normalization batch finished items=%s duration=%.2fs",
            len(foods),
            perf_counter() - started,
        )
        return parse_normalization_response(text, expected_count=len(foods))


def build_system_prompt() -> str:
    return dedent(
        """
        Du hjälper till att normalisera livsmedelsnamn i en svensk receptdatabas.
        Svara alltid med STRIKT JSON enligt det efterfrågade formatet, utan annan text.
        """
    ).strip()


def build_user_prompt(foods: Sequence[PendingFood]) -> str:
    instructions = dedent(
        """
        För varje livsmedelsnamn:
        1. Ta bort tillagningsinstruktioner (hackad, riven, hel, halv, strimlad, tärnad, skivad, malen, krossad,
           pressad, färsk, fryst, torkad, finriven, grovhackad, finhackad, rumstempererad, smält, kokta, stekt,
           urkärnad, skalad, delad, etc.)
        2. Extrahera mängdangivelser ("2 dl", "70g", "ca 100g") OCH förpacknings-/enhetsord (burk, burkar, påse,
           klyfta, skiva, skivor, knippe, näve, bit, bitar, förpackning, paket, flaska) som unit.
        3. Returnera det normaliserade basnamnet med stor första bokstav.
        4. Sätt isGibberish till true och normalizedName till null om namnet inte är ett livsmedel.

        Exempel:
        - "Schalottenlök, finhackad" -> { "normalizedName": "Schalottenlök", "quantity": null, "unit": null, "isGibberish": false }
        - "finrivna morötter (70g)" -> { "normalizedName": "Morötter", "quantity": 70, "unit": "g", "isGibberish": false }
        - "asdfghjk" -> { "normalizedName": null, "quantity": null, "unit": null, "isGibberish": true }
        - "2 dl vatten" -> { "normalizedName": "Vatten", "quantity": 2, "unit": "dl", "isGibberish": false }
        - "burk tomater" -> { "normalizedName": "Tomater", "quantity": null, "unit": "burk", "isGibberish": false }
        - "klyfta vitlök" -> { "normalizedName": "Vitlök", "quantity": null, "unit": "klyfta", "isGibberish": false }

        Svara med en JSON-array med exakt ett objekt per livsmedel, i samma ordning.

        Livsmedel att normalisera:
        """
    ).strip()
    lines = [f"{idx}. {json.dumps(food.name, ensure_ascii=False)}" for idx, food in enumerate(foods, start=1)]
    return f"{instructions}\n" + "\n".join(lines)


def scrub_json(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
    return stripped.strip()


def parse_normalization_response(text: str | None, *, expected_count: int) -> List[NormalizationResult]:
    """Parse the model output into exactly `expected_count` results, in request order."""
    if not text or not isinstance(text, str):
        raise ClassificationError("No response from classification model")

    entries = _load_entries(scrub_json(text))
    if len(entries) != expected_count:
        raise ClassificationError(
            f"Classification returned {len(entries)} results but expected {expected_count}"
        )

    results: List[NormalizationResult] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ClassificationError(f"Classification result {index} is not an object")
        try:
            results.append(NormalizationResult.model_validate(entry))
        except ValidationError as exc:
            raise ClassificationError(f"Classification result {index} is malformed: {exc}") from exc
    return results


def _load_entries(text: str) -> List[Any]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_ARRAY_RE.search(text)
        if not match:
            raise ClassificationError("No JSON array found in classification response")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ClassificationError(f"Invalid JSON in classification response: {exc}") from exc

    # json_object response formats wrap the array, e.g. {"results": [...]}.
    if isinstance(parsed, dict):
        lists = [value for value in parsed.values() if isinstance(value, list)]
        if len(lists) == 1:
            parsed = lists[0]
    if not isinstance(parsed, list):
        raise ClassificationError("Classification response is not an array")
    return parsed
