import os
from typing import Any, Dict, List

import httpx

from productgallery.core.config import settings

SERPAPI_BASE = "https://serpapi.com/search.json"


class SerpApiError(Exception):
    pass


def _get_serpapi_key() -> str:
    # Prefer pydantic settings, fallback to env
    key = (getattr(settings, "SERPAPI_API_KEY", "") or "").strip()
    if not key:
        key = (os.environ.get("SERPAPI_API_KEY", "") or "").strip()
    return key


def serpapi_enabled() -> bool:
    return bool(_get_serpapi_key())


async def images_search(
    q: str,
    gl: str = "us",
    hl: str = "en",
    num: int = 20,
) -> Dict[str, Any]:
    """
    Calls SerpAPI Google Images and returns the raw JSON response.
    """
    api_key = _get_serpapi_key()
    if not api_key:
        raise SerpApiError("SERPAPI_API_KEY is not set")

    params: Dict[str, Any] = {
        "engine": "google_images",
        "q": q,
        "api_key": api_key,
        "gl": gl,
        "hl": hl,
    }

    # SerpAPI uses "num" for some engines; if ignored, it won't break.
    try:
        params["num"] = max(1, min(int(num), 100))
    except Exception:
        params["num"] = 20

    async with httpx.AsyncClient(timeout=60) as client:
        r = await client.get(SERPAPI_BASE, params=params)
        try:
            r.raise_for_status()
        except httpx.HTTPStatusError:
            raise SerpApiError(f"SerpAPI request failed: {r.status_code}\nBODY:\n{r.text[:2000]}")

        data = r.json()

    # Normalize: if the engine returns an error payload, surface it clearly
    if isinstance(data, dict) and data.get("error"):
        raise SerpApiError(f"SerpAPI error: {data.get('error')}")

    return data


def extract_image_urls(raw: Dict[str, Any]) -> List[str]:
    """
    Full-size URLs from images_results (falls back to the thumbnail).
    """
    out: List[str] = []
    for r in raw.get("images_results", []) or []:
        if not isinstance(r, dict):
            continue
        for k in ("original", "image", "thumbnail"):
            v = r.get(k)
            if isinstance(v, str) and v.strip():
                out.append(v.strip())
                break
    return out


async def image_urls_for(q: str, num: int = 20) -> List[str]:
    raw = await images_search(q=q, num=num)
    return extract_image_urls(raw)
