import asyncio
import base64
import json
import logging
import os
import random
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from productgallery.core.config import settings
from productgallery.core.imaging import aspect_ratio_for, mime_type_for
from productgallery.pipeline.models import GalleryItem

logger = logging.getLogger(__name__)

# Service endpoint for Gemini API (v1beta)
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

# Retry behavior for 429/503
MAX_RETRIES = settings.GEMINI_MAX_RETRIES
MAX_BACKOFF_SECONDS = settings.GEMINI_MAX_BACKOFF_SECONDS


class GeminiRequestError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class GeminiRateLimitError(GeminiRequestError):
    def __init__(self, message: str, retry_after_seconds: Optional[float] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after_seconds = retry_after_seconds


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def _redact_key(s: str) -> str:
    """
    Redact 'key=...' in URLs or text so we never leak API keys in logs/responses.
    """
    if not s:
        return s
    # Replace key=XXXXX (until & or whitespace)
    return re.sub(r"(key=)([^&\s]+)", r"\1REDACTED", s)


def _extract_json_best_effort(text: str) -> Dict[str, Any]:
    """
    Robust JSON extraction (handles fenced blocks, extra text, etc.).
    Returns the first valid JSON object found.
    """
    # 1) Prefer fenced ```json ... ```
    fenced = re.search(r"```json\s*(\{.*?\})\s*```", text, re.DOTALL | re.IGNORECASE)
    if fenced:
        return json.loads(fenced.group(1).strip())

    # 2) Greedy outermost object (grounded answers nest arrays of URLs)
    m = re.search(r"\{.*\}", text, re.DOTALL)
    if m:
        try:
            return json.loads(m.group(0))
        except ValueError:
            pass

    # 3) Non-greedy blocks
    for b in re.findall(r"\{.*?\}", text, re.DOTALL):
        try:
            return json.loads(b.strip())
        except ValueError:
            continue

    raise ValueError("No JSON object found in model output")


def _retry_after_seconds(resp: httpx.Response) -> Optional[float]:
    retry_after = resp.headers.get("retry-after")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        return None


async def _sleep_for_retry(resp: httpx.Response, attempt: int) -> None:
    """
    Respect Retry-After header when present; otherwise exponential backoff with jitter.
    """
    wait = _retry_after_seconds(resp)
    if wait is not None:
        await asyncio.sleep(max(0.5, min(wait, MAX_BACKOFF_SECONDS)))
        return

    # Exponential backoff with jitter
    base = min(MAX_BACKOFF_SECONDS, (2 ** attempt))
    jitter = random.uniform(0.0, 0.5)
    await asyncio.sleep(base + jitter)


async def _post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Dict[str, Any],
    json_payload: Dict[str, Any],
    max_retries: int = MAX_RETRIES,
) -> httpx.Response:
    """
    POST with retries for 429/503.
    """
    last_resp: Optional[httpx.Response] = None

    for attempt in range(max_retries + 1):
        resp = await client.post(url, params=params, json=json_payload)
        last_resp = resp

        if resp.status_code in (429, 503):
            # If we still have retries left, back off and try again
            if attempt < max_retries:
                await _sleep_for_retry(resp, attempt)
                continue

        return resp

    # Should never hit here, but just in case:
    return last_resp  # type: ignore[return-value]


def _api_key() -> str:
    api_key = (getattr(settings, "GEMINI_API_KEY", "") or os.environ.get("GEMINI_API_KEY", "")).strip()
    if not api_key:
        raise GeminiRequestError("GEMINI_API_KEY is not set")
    return api_key


def _model_path(name: str) -> str:
    name = (name or "").strip()
    return name if name.startswith("models/") else f"models/{name}"


def _image_part(image_bytes: bytes) -> Dict[str, Any]:
    return {"inline_data": {"mime_type": mime_type_for(image_bytes), "data": _b64(image_bytes)}}


async def _generate_content(
    model: str,
    parts: List[Dict[str, Any]],
    *,
    generation_config: Optional[Dict[str, Any]] = None,
    tools: Optional[List[Dict[str, Any]]] = None,
    timeout: float = 60,
) -> Dict[str, Any]:
    """
    One generateContent call with retries; raises GeminiRateLimitError when
    still throttled after retries and GeminiRequestError for any other >= 400.
    """
    api_key = _api_key()
    url = f"{API_BASE}/{_model_path(model)}:generateContent"

    payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
    if generation_config:
        payload["generationConfig"] = generation_config
    if tools:
        payload["tools"] = tools

    async with httpx.AsyncClient(timeout=timeout) as client:
        r = await _post_with_retry(client, url, params={"key": api_key}, json_payload=payload)

    if r.status_code == 429:
        raise GeminiRateLimitError(
            "Gemini rate limit exceeded",
            retry_after_seconds=_retry_after_seconds(r),
        )
    if r.status_code >= 400:
        safe_body = _redact_key(r.text)[:2000]
        raise GeminiRequestError(
            f"Gemini request failed: {r.status_code}",
            status_code=r.status_code,
            body=safe_body,
        )
    return r.json()


def _response_parts(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    try:
        return data["candidates"][0]["content"]["parts"] or []
    except (KeyError, IndexError, TypeError):
        raise GeminiRequestError(f"Unexpected Gemini response shape; raw={json.dumps(data)[:2000]}")


def _response_text(data: Dict[str, Any]) -> str:
    return "".join(p.get("text", "") for p in _response_parts(data) if isinstance(p, dict))


def _response_image(data: Dict[str, Any]) -> bytes:
    for p in _response_parts(data):
        if not isinstance(p, dict):
            continue
        inline = p.get("inline_data") or p.get("inlineData")
        if inline and inline.get("data"):
            return base64.b64decode(inline["data"])
    raise GeminiRequestError("Gemini returned no image")


def _parse_json_text(text: str) -> Dict[str, Any]:
    # 1) Strict JSON parse first
    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj
    except ValueError:
        pass

    # 2) Best-effort extraction
    return _extract_json_best_effort(text)


def _verify_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "match": {"type": "boolean"},
            "confidence": {"type": "number"},
            "reason": {"type": ["string", "null"]},
        },
        "required": ["match", "confidence"],
        "additionalProperties": False,
    }


async def verify_product_image(image_bytes: bytes, expected_title: str, source_url: str = "") -> bool:
    """
    Vision check: does this photo plausibly show `expected_title`?

    Rejects packshots of a different model/variant, collages, logos,
    screenshots and images dominated by text.
    """
    prompt = (
        "You are a strict product photo verifier for an e-commerce catalog.\n"
        f"Expected product: {expected_title}\n"
        f"Image source URL: {source_url or 'unknown'}\n"
        "Answer match=true ONLY if the image is a photo of this exact product "
        "(same brand, model and variant). Answer match=false for other models, "
        "collages, logos, screenshots, or text-dominated images.\n"
        "Return ONLY valid JSON matching the provided schema.\n"
    )
    data = await _generate_content(
        settings.GEMINI_MODEL,
        [{"text": prompt}, _image_part(image_bytes)],
        generation_config={
            "response_mime_type": "application/json",
            "response_json_schema": _verify_schema(),
            "temperature": 0,
        },
        timeout=45,
    )
    verdict = _parse_json_text(_response_text(data))
    return bool(verdict.get("match")) and float(verdict.get("confidence") or 0) >= 0.5


async def clean_product_photo(image_bytes: bytes, expected_title: str) -> bytes:
    """
    Isolate the product on a pure white background, keeping the original framing.
    """
    prompt = (
        f"Product: {expected_title}.\n"
        "FULL FRAME PRESERVATION: Subject isolated on perfect white background (#FFFFFF). "
        "Keep original framing and edges. Do not crop. High contrast, sharp edges. "
        "No text, no extra objects."
    )
    data = await _generate_content(
        settings.GEMINI_IMAGE_MODEL,
        [_image_part(image_bytes), {"text": prompt}],
        generation_config={
            "response_modalities": ["IMAGE"],
            "image_config": {"aspect_ratio": aspect_ratio_for(image_bytes)},
        },
        timeout=90,
    )
    return _response_image(data)


VARIATION_SHOTS = [
    ("HERO SHOT", "Eye-level perspective. Showcase the whole product clearly."),
    ("DETAIL SHOT", "Macro-style, focus on texture and quality."),
    ("3/4 ANGLE", "Slightly high angle showing depth."),
    ("DRAMATIC VIEW", "Dynamic angle with unique lighting."),
]


def _view_prompt(title: str, shot_index: int) -> str:
    shot_type, shot_desc = VARIATION_SHOTS[shot_index]
    return (
        f"OBJECTIVE: Generate a {shot_type} for the product: {title}.\n"
        "STRICT PRODUCT INTEGRITY RULES:\n"
        "1. DO NOT add any text, labels, nameplates, or stickers to the product.\n"
        "2. DO NOT change the product's geometry, shape, or surface details.\n"
        "3. DO NOT cut off any parts of the product.\n"
        "ENVIRONMENT RULES:\n"
        "1. TRANSFORM ONLY THE BACKGROUND AND LIGHTING.\n"
        "2. THEME: Clean professional studio setting with neutral minimal background.\n"
        f"3. PERSPECTIVE: {shot_desc}\n"
        "Technical: photorealistic, professional e-commerce quality."
    )


async def generate_product_views(
    seed_image: bytes,
    title: str,
    count: int,
    offset: int = 0,
) -> List[GalleryItem]:
    """
    Generate `count` synthetic views of the seed product.
    Shot types rotate with `offset`; a failed shot is skipped, so the result
    may hold fewer than `count` items. When no shot succeeds the last
    GeminiRequestError is raised, so an empty list never means "failed".
    """
    if count <= 0:
        return []

    ratio = aspect_ratio_for(seed_image)
    errors: List[GeminiRequestError] = []

    async def one(i: int) -> Optional[GalleryItem]:
        shot_index = (offset + i) % len(VARIATION_SHOTS)
        try:
            data = await _generate_content(
                settings.GEMINI_IMAGE_MODEL,
                [_image_part(seed_image), {"text": _view_prompt(title, shot_index)}],
                generation_config={
                    "response_modalities": ["IMAGE"],
                    "image_config": {"aspect_ratio": ratio},
                },
                timeout=90,
            )
            img = _response_image(data)
        except GeminiRequestError as e:
            logger.warning("view generation failed (shot %d): %s", shot_index + 1, e.message)
            errors.append(e)
            return None
        return GalleryItem(
            name=f"gen_{shot_index + 1}_{int(time.time() * 1000)}.png",
            data=img,
            is_synthetic=True,
        )

    results = await asyncio.gather(*(one(i) for i in range(count)))
    items = [r for r in results if r is not None]
    if not items and errors:
        raise errors[-1]
    return items


async def search_product_by_title(title: str) -> Dict[str, Any]:
    """
    Grounded Google Search for product photos.
    Returns {"title": str, "images": [url, ...]}; images may be empty.
    """
    prompt = (
        f"Search the web for the retail product: {title}.\n"
        "Return JSON {\"title\": <canonical product name>, \"images\": [<direct image URLs>]} "
        "with up to 10 direct links to product photos (jpg/png/webp) from shops or the manufacturer. "
        "No markdown. No extra text."
    )
    # Structured output can't be combined with the search tool, so parse best-effort
    data = await _generate_content(
        settings.GEMINI_MODEL,
        [{"text": prompt}],
        generation_config={"temperature": 0.2},
        tools=[{"google_search": {}}],
        timeout=60,
    )
    obj = _parse_json_text(_response_text(data))
    images = [u for u in (obj.get("images") or []) if isinstance(u, str)]
    return {"title": str(obj.get("title") or title), "images": images}
