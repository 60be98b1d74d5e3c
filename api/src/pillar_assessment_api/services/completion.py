from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Union

import httpx

from ..config import CompletionConfig, get_completion_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StructuredOutput:
    payload: dict[str, Any]
    raw_text: str = ""


@dataclass(frozen=True)
class RawText:
    text: str
    reason: str = "non_json_response"
    meta: dict[str, Any] = field(default_factory=dict)


CompletionResult = Union[StructuredOutput, RawText]
CompletionInvoker = Callable[[str], str]


def _validate_model(model: str) -> bool:
    return model.startswith("gemini-3-")


def extract_json(text: str) -> dict[str, Any] | None:
    candidates: list[str] = [text.strip()]
    if "```" in text:
        stripped = text.strip()
        if stripped.startswith("```"):
            first_nl = stripped.find("\n")
            last_fence = stripped.rfind("```")
            if first_nl != -1 and last_fence != -1 and last_fence > first_nl:
                candidates.append(stripped[first_nl + 1:last_fence].strip())

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def classify_completion(text: str) -> CompletionResult:
    stripped = (text or "").strip()
    if not stripped:
        return RawText(text="", reason="empty_response")
    parsed = extract_json(stripped)
    if parsed is None:
        return RawText(text=stripped, reason="non_json_response")
    return StructuredOutput(payload=parsed, raw_text=stripped)


def _gemini_invoker(cfg: CompletionConfig) -> CompletionInvoker | None:
    try:
        from google import genai  # type: ignore
        from google.genai import types  # type: ignore
    except ImportError:
        return None

    def _invoke(prompt: str) -> str:
        # Client construction errors must be raised inside the guarded call.
        client = genai.Client(
            api_key=cfg.api_key,
            http_options=types.HttpOptions(timeout=cfg.timeout_seconds * 1000),
        )
        response = client.models.generate_content(model=cfg.model, contents=prompt)
        return response.text or ""

    return _invoke


def request_completion(prompt: str, *, invoke: CompletionInvoker | None = None) -> CompletionResult:
    """
    Single request/response to the completion service.
    Never raises: disabled, unavailable, timed-out and failed calls all come back as RawText.
    """
    cfg = get_completion_config()
    meta: dict[str, Any] = {"model": cfg.model}
    if invoke is None:
        if not cfg.enabled:
            return RawText(text="", reason="disabled", meta=meta)
        if not cfg.api_key:
            return RawText(text="", reason="missing_api_key", meta=meta)
        if not _validate_model(cfg.model):
            return RawText(text="", reason="invalid_model", meta=meta)
        invoke = _gemini_invoker(cfg)
        if invoke is None:
            return RawText(text="", reason="sdk_unavailable", meta=meta)

    try:
        text = invoke(prompt)
    except httpx.TimeoutException as exc:
        logger.warning("Completion request timed out after %ss: %s", cfg.timeout_seconds, exc)
        return RawText(text="", reason="timeout", meta=meta)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Completion request failed: %s", exc)
        return RawText(text="", reason=f"request_error:{str(exc)[:160]}", meta=meta)

    result = classify_completion(text)
    if isinstance(result, RawText):
        return RawText(text=result.text, reason=result.reason, meta=meta)
    return result
