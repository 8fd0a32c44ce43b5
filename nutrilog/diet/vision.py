# -*- coding: utf-8 -*-
"""Diet — Vision model call via OpenCode session API (the analysis service)."""

from __future__ import annotations

import ast
import asyncio
import base64
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from ..config import settings
from ..errors import (
    AnalysisAuthError,
    AnalysisConnectionError,
    AnalysisError,
    AnalysisRejectedError,
    AnalysisServerError,
    AnalysisTimeoutError,
    AnalysisValidationError,
    MalformedResponseError,
    NoFoodDetectedError,
)
from ..photos.manager import PhotoManager
from .models import FoodItem, NutritionRecord, NutritionTotals

logger = logging.getLogger(__name__)

_MIME_BY_SUFFIX = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".heic": "image/heic",
}

SYSTEM_PROMPT = (
    "You are a nutrition assistant. Return STRICT JSON only. "
    "Do NOT wrap in markdown or code fences. "
    "Output MUST start with '{' and end with '}'. "
    "Use double quotes for all keys/strings and no trailing commas. "
    "Estimate food type and nutrition for the portion shown. "
    "If unsure, use low confidence and add warnings; do NOT fabricate precise numbers."
)

USER_PROMPT = (
    "Task:\n"
    "1) Identify all foods in the photo.\n"
    "2) Estimate portion and grams.\n"
    "3) Estimate nutrition for the consumed portion: calories_kcal, protein_g, carbs_g, fat_g.\n"
    "4) Write a short description of the meal (max 10 words).\n"
    "5) If you can't identify any food, return items: [] and add a warning.\n"
    "\n"
    "Output JSON schema (STRICT):\n"
    "{\n"
    '  "description": "string",\n'
    '  "items": [{"name": "string", "portion": "string|null", "grams": number|null,\n'
    '             "calories_kcal": number|null, "protein_g": number|null,\n'
    '             "carbs_g": number|null, "fat_g": number|null, "confidence": number|null}],\n'
    '  "totals": {"calories_kcal": number, "protein_g": number, "carbs_g": number, "fat_g": number} | null,\n'
    '  "warnings": ["string"]\n'
    "}\n"
)


@dataclass(frozen=True)
class VisionSettings:
    base_url: str
    model: str
    timeout: float
    agent: str


def resolve_vision_settings() -> VisionSettings:
    base_url = (os.environ.get("DIET_VISION_BASE_URL") or settings.opencode_base_url).rstrip("/")
    # NOTE: OpenCode's global `model` is often text-only; default to an image-capable one.
    model = (os.environ.get("DIET_VISION_MODEL") or "").strip() or "opencode/kimi-k2.5-free"
    timeout = float(os.environ.get("DIET_VISION_TIMEOUT") or settings.vision_timeout)
    agent = (os.environ.get("DIET_VISION_AGENT") or "general").strip() or "general"
    return VisionSettings(base_url=base_url, model=model, timeout=timeout, agent=agent)


# ---------------------------------------------------------------------------
# Model output parsing
# ---------------------------------------------------------------------------


def _remove_trailing_commas(text: str) -> str:
    """Remove trailing commas in JSON while preserving string literals."""
    out: list[str] = []
    in_str = False
    escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_str:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == "\"":
                in_str = False
            i += 1
            continue

        if ch == "\"":
            in_str = True
        elif ch == ",":
            j = i + 1
            while j < len(text) and text[j] in " \t\r\n":
                j += 1
            if j < len(text) and text[j] in "}]":
                i += 1
                continue

        out.append(ch)
        i += 1
    return "".join(out)


def _iter_json_object_candidates(text: str) -> list[str]:
    """Extract balanced {...} candidates from arbitrary text.

    Models sometimes wrap JSON with prose or fences, or emit several objects.
    """
    cleaned = text.strip()
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\s*```$", "", cleaned)

    candidates: list[str] = []
    in_str = False
    escaped = False
    depth = 0
    start_idx: int | None = None

    for i, ch in enumerate(cleaned):
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == "\"":
                in_str = False
            continue

        if ch == "\"":
            in_str = True
        elif ch == "{":
            if depth == 0:
                start_idx = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start_idx is not None:
                candidates.append(cleaned[start_idx : i + 1])
                start_idx = None

    return candidates


def _sanitize_json_like(text: str) -> str:
    # Full-width punctuation, curly quotes, trailing commas and non-finite floats.
    cleaned = text.replace("：", ":").replace("，", ",")
    cleaned = cleaned.replace("“", "\"").replace("”", "\"").replace("‘", "'").replace("’", "'")
    cleaned = _remove_trailing_commas(cleaned)
    cleaned = re.sub(r"\bNaN\b", "null", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"\b-?Infinity\b", "null", cleaned, flags=re.IGNORECASE)
    return cleaned


def _parse_model_output_json(content: str) -> Dict[str, Any]:
    last_error: Exception | None = None

    for candidate in _iter_json_object_candidates(content):
        sanitized = _sanitize_json_like(candidate)
        for attempt in (candidate, sanitized):
            try:
                parsed = json.loads(attempt)
            except ValueError as exc:
                last_error = exc
                continue
            if isinstance(parsed, dict):
                return parsed

        # Python-literal-ish dicts (single quotes/None/True/False).
        py = re.sub(r"\bnull\b", "None", sanitized, flags=re.IGNORECASE)
        py = re.sub(r"\btrue\b", "True", py, flags=re.IGNORECASE)
        py = re.sub(r"\bfalse\b", "False", py, flags=re.IGNORECASE)
        try:
            parsed = ast.literal_eval(py)
        except (ValueError, SyntaxError) as exc:
            last_error = exc
            continue
        if isinstance(parsed, dict):
            return parsed

    detail = f": {last_error}" if last_error else ""
    raise MalformedResponseError(f"Model output does not contain a JSON object{detail}")


def _concat_text_parts(parts: object) -> str:
    if not isinstance(parts, list):
        return ""
    out: list[str] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        ptype = part.get("type")
        if ptype and ptype not in {"text", "output_text"}:
            continue
        for key in ("text", "content", "value"):
            val = part.get(key)
            if isinstance(val, str) and val:
                out.append(val)
                break
    return "".join(out)


def _extract_text_from_response(data: object) -> str:
    """Support OpenCode 'parts' responses and OpenAI-compatible 'choices' responses."""
    if not isinstance(data, dict):
        return ""

    content = _concat_text_parts(data.get("parts"))
    if content:
        return content

    for key in ("info", "message"):
        nested = data.get(key)
        if isinstance(nested, dict):
            content = _concat_text_parts(nested.get("parts"))
            if content:
                return content
            maybe = nested.get("content")
            if isinstance(maybe, str) and maybe:
                return maybe

    choices = data.get("choices")
    if isinstance(choices, list):
        out: list[str] = []
        for choice in choices:
            if not isinstance(choice, dict):
                continue
            msg = choice.get("message")
            if isinstance(msg, dict) and isinstance(msg.get("content"), str):
                out.append(msg["content"])
            elif isinstance(choice.get("text"), str):
                out.append(choice["text"])
        return "".join(out)

    return ""


def _pick_str(value: object) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s or None
    return None


def _message_from_json_str(raw: str) -> str | None:
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    err = parsed.get("error")
    if isinstance(err, dict):
        msg = _pick_str(err.get("message"))
        if msg:
            return msg
    return _pick_str(parsed.get("message")) or _pick_str(parsed.get("detail"))


def _extract_error_from_response(data: object) -> Tuple[Optional[int], str] | None:
    """Return (status code, readable message) for an error embedded in a 200 response."""
    if not isinstance(data, dict):
        return None

    def coerce(err_obj: object) -> Tuple[Optional[int], str] | None:
        if not isinstance(err_obj, dict):
            return None
        name = _pick_str(err_obj.get("name")) or "OpenCodeError"
        status: Optional[int] = None
        message = _pick_str(err_obj.get("message"))

        data_obj = err_obj.get("data")
        if isinstance(data_obj, dict):
            if isinstance(data_obj.get("statusCode"), int):
                status = data_obj["statusCode"]
            message = _pick_str(data_obj.get("message")) or message
            # Providers often return their JSON error payload as a string.
            response_body = _pick_str(data_obj.get("responseBody"))
            if response_body:
                message = _message_from_json_str(response_body) or message

        if not message:
            return None
        prefix = name if status is None else f"{name} ({status})"
        return status, f"{prefix}: {message}"

    info = data.get("info")
    if isinstance(info, dict):
        found = coerce(info.get("error"))
        if found:
            return found
    return coerce(data.get("error"))


_NUM_RE = re.compile(r"-?\d+(?:\.\d+)?")


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        m = _NUM_RE.search(value.replace(",", ""))
        return float(m.group(0)) if m else None
    return None


_TOTAL_KEYS = {
    "calories": "calories_kcal",
    "calorie": "calories_kcal",
    "kcal": "calories_kcal",
    "energy": "calories_kcal",
    "energy_kcal": "calories_kcal",
    "protein": "protein_g",
    "carbohydrates": "carbs_g",
    "carbs": "carbs_g",
    "carb": "carbs_g",
    "fat": "fat_g",
    "lipid": "fat_g",
}


def _normalize_totals(totals: Any) -> Optional[NutritionTotals]:
    if not isinstance(totals, dict):
        return None
    out: Dict[str, float] = {}
    for k, v in totals.items():
        if not isinstance(k, str):
            continue
        key = _TOTAL_KEYS.get(k, k)
        if key not in NutritionTotals.model_fields:
            continue
        fv = _coerce_float(v)
        if fv is not None:
            out[key] = max(0.0, fv)
    return NutritionTotals(**out) if out else None


def _first_present(obj: Dict[str, Any], keys: List[str]) -> Any:
    for k in keys:
        if k in obj:
            return obj.get(k)
    return None


def _normalize_items(items: Any) -> List[FoodItem]:
    if not isinstance(items, list):
        return []
    out: List[FoodItem] = []
    for raw in items:
        if not isinstance(raw, dict):
            continue

        name = _first_present(raw, ["name", "food", "item", "dish", "title"])
        name = (str(name) if name is not None else "").strip() or "unknown"

        portion = _first_present(raw, ["portion", "serving", "amount", "size", "quantity"])
        portion = portion.strip() or None if isinstance(portion, str) else None

        def pick_num(keys: List[str]) -> Optional[float]:
            val = _coerce_float(_first_present(raw, keys))
            return max(0.0, val) if val is not None else None

        confidence = pick_num(["confidence", "conf", "score"])
        if confidence is not None and 1 < confidence <= 100:
            confidence = confidence / 100.0
        if confidence is not None:
            confidence = min(1.0, confidence)

        out.append(
            FoodItem(
                name=name,
                portion=portion,
                grams=pick_num(["grams", "gram", "weight_g", "weight", "g"]),
                calories_kcal=pick_num(["calories_kcal", "calories", "kcal", "energy_kcal", "energy"]),
                protein_g=pick_num(["protein_g", "protein"]),
                carbs_g=pick_num(["carbs_g", "carbs", "carbohydrates"]),
                fat_g=pick_num(["fat_g", "fat", "lipid"]),
                confidence=confidence,
            )
        )
    return out


def _sum_items(items: List[FoodItem]) -> NutritionTotals:
    return NutritionTotals(
        calories_kcal=sum(i.calories_kcal or 0.0 for i in items),
        protein_g=sum(i.protein_g or 0.0 for i in items),
        carbs_g=sum(i.carbs_g or 0.0 for i in items),
        fat_g=sum(i.fat_g or 0.0 for i in items),
    )


def build_record(parsed: Dict[str, Any]) -> NutritionRecord:
    """Turn parsed model JSON into a validated nutrition record."""
    items_raw = parsed.get("items")
    if items_raw is None:
        items_raw = parsed.get("foods") or parsed.get("food")
    totals_raw = parsed.get("totals")
    if totals_raw is None:
        totals_raw = parsed.get("total")

    items = _normalize_items(items_raw)
    totals = _normalize_totals(totals_raw) or _sum_items(items)
    calories = int(round(totals.calories_kcal))
    if not items and calories <= 0:
        raise NoFoodDetectedError()

    description = _pick_str(parsed.get("description"))
    if not description:
        description = ", ".join(i.name for i in items)[:200] or "Meal"

    try:
        return NutritionRecord(
            calories=calories,
            protein_g=round(totals.protein_g, 1),
            carbs_g=round(totals.carbs_g, 1),
            fat_g=round(totals.fat_g, 1),
            description=description,
            items=items,
        )
    except ValidationError as exc:
        raise AnalysisValidationError(f"Implausible nutrition values: {exc}") from exc


# ---------------------------------------------------------------------------
# HTTP call
# ---------------------------------------------------------------------------


def _data_url(mime: str, image_bytes: bytes) -> str:
    b64 = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime};base64,{b64}"


def _raise_for_status(resp: httpx.Response) -> None:
    code = resp.status_code
    if code < 400:
        return
    detail = f"HTTP {code} from {resp.request.url}"
    if code >= 500:
        raise AnalysisServerError(detail, status_code=code)
    if code in (401, 403):
        raise AnalysisAuthError(detail, status_code=code)
    raise AnalysisRejectedError(detail, status_code=code)


def _error_for_status(status: Optional[int], message: str) -> AnalysisError:
    if status in (401, 403):
        return AnalysisAuthError(message, status_code=status)
    if status is not None and 400 <= status < 500:
        return AnalysisRejectedError(message, status_code=status)
    return AnalysisServerError(message, status_code=status)


def _json_body(resp: httpx.Response) -> object:
    content_type = (resp.headers.get("content-type") or "").lower()
    if "text/html" in content_type:
        raise MalformedResponseError("OpenCode API returned HTML")
    raw = resp.text or ""
    if not raw.strip():
        raise MalformedResponseError("OpenCode returned an empty body")
    try:
        return resp.json()
    except ValueError as exc:
        snippet = raw.replace("\n", " ").strip()[:200]
        raise MalformedResponseError(f"OpenCode returned non-JSON response: {snippet}") from exc


class VisionAnalysisService:
    """Analyzes a stored meal photo with a vision model behind the OpenCode API."""

    def __init__(
        self,
        photos: PhotoManager,
        *,
        vision: VisionSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._photos = photos
        self._vision = vision or resolve_vision_settings()
        self._transport = transport

    @property
    def model(self) -> str:
        return self._vision.model

    def _session_url(self) -> str:
        base = self._vision.base_url.rstrip("/")
        parsed = urlparse(base)
        root = f"{parsed.scheme}://{parsed.netloc}"
        return f"{root}/session" if base != root else f"{base}/session"

    def _payload(self, image_mime: str, image_bytes: bytes) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "system": SYSTEM_PROMPT,
            "agent": self._vision.agent,
            "parts": [
                {"type": "text", "text": USER_PROMPT},
                {
                    "type": "file",
                    "mime": image_mime,
                    "filename": "meal",
                    "url": _data_url(image_mime, image_bytes),
                },
            ],
        }
        if "/" in self._vision.model:
            provider_id, model_id = self._vision.model.split("/", 1)
            if provider_id and model_id:
                payload["model"] = {"providerID": provider_id, "modelID": model_id}
        return payload

    async def analyze(self, artifact_ref: str) -> NutritionRecord:
        path = self._photos.resolve(artifact_ref)
        image_bytes = await asyncio.to_thread(path.read_bytes)
        image_mime = _MIME_BY_SUFFIX.get(path.suffix.lower(), "image/jpeg")

        session_url = self._session_url()
        headers = {
            "Content-Type": "application/json",
            "x-opencode-directory": str(settings.opencode_directory),
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._vision.timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                session_resp = await client.post(session_url, headers=headers, json={"title": "meal-analysis"})
                _raise_for_status(session_resp)
                session = _json_body(session_resp)
                session_id = session.get("id") or session.get("session_id") if isinstance(session, dict) else None
                if not session_id:
                    raise MalformedResponseError("OpenCode session id missing")

                resp = await client.post(
                    f"{session_url}/{session_id}/message",
                    headers=headers,
                    json=self._payload(image_mime, image_bytes),
                )
                _raise_for_status(resp)
                data = _json_body(resp)
        except httpx.TimeoutException as exc:
            raise AnalysisTimeoutError(f"Vision call timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise AnalysisConnectionError(f"Vision service unreachable: {exc}") from exc

        embedded = _extract_error_from_response(data)
        if embedded:
            status, message = embedded
            raise _error_for_status(status, message)

        content = _extract_text_from_response(data)
        parsed = _parse_model_output_json(content or "")
        record = build_record(parsed)
        logger.debug(
            "Vision analysis for %s: %s kcal, %r (model=%s)",
            artifact_ref,
            record.calories,
            record.description,
            self._vision.model,
        )
        return record
