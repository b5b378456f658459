from __future__ import annotations

import logging
from typing import Any, Dict

import openai
from openai import OpenAI

from ..config import get_settings

logger = logging.getLogger(__name__)


class OpenAIClientError(RuntimeError):
    """The model call did not produce usable text."""


def call_openai_responses(
    *,
    model: str,
    system_prompt: str,
    user_prompt: str,
    max_output_tokens: int,
    top_p: float | None = None,
    reasoning_effort: str | None = None,
) -> str:
    """Call the OpenAI Responses API and return the combined text output."""
    settings = get_settings()
    if not settings.openai_api_key:
        raise OpenAIClientError("OpenAI not configured")
    client = OpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.openai_request_timeout_seconds,
    )
    response_payload: Dict[str, Any] = {
        "model": model,
        "input": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "max_output_tokens": max_output_tokens,
    }
    if top_p is not None:
        response_payload["top_p"] = top_p
    if reasoning_effort:
        response_payload["reasoning"] = {"effort": reasoning_effort}

    try:
        response = client.responses.create(**response_payload)
    except openai.APITimeoutError as exc:
        logger.error(
            "Timeout calling OpenAI Responses API after %ss", settings.openai_request_timeout_seconds
        )
        raise OpenAIClientError("Timed out while waiting for the OpenAI model") from exc
    except openai.APIError as exc:
        logger.error("OpenAI Responses API error: %s", exc)
        raise OpenAIClientError(f"OpenAI error: {exc}") from exc

    if getattr(response, "status", "completed") != "completed":
        reason = getattr(getattr(response, "incomplete_details", None), "reason", "unknown")
        logger.error("OpenAI Responses API returned incomplete status: %s", reason)
        raise OpenAIClientError(f"Model did not complete successfully ({reason})")
    text = _extract_response_text(response)
    if not text:
        raise OpenAIClientError("Model returned empty output")
    return text


def _extract_response_text(response: Any) -> str:
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text.strip()

    chunks: list[str] = []
    output = getattr(response, "output", None)
    if output is None and isinstance(response, dict):
        output = response.get("output")
    for block in output or []:
        block_content = getattr(block, "content", None)
        if block_content is None and isinstance(block, dict):
            block_content = block.get("content")
        for content in block_content or []:
            part_text = getattr(content, "text", None)
            if part_text is None and isinstance(content, dict):
                part_text = content.get("text")
            if part_text:
                chunks.append(part_text)
    return "".join(chunks).strip()
