"""
Title-based media search.

Wikimedia Commons (free, always on) followed by SerpAPI Google Images when a
key is configured. Every source is best-effort: a failing source contributes
nothing instead of failing the search.
"""

import logging
import re
from typing import Any, Dict, List

import httpx

from productgallery.core import serpapi

logger = logging.getLogger(__name__)

COMMONS_API = "https://commons.wikimedia.org/w/api.php"

_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")


def clean_query(query: str) -> str:
    # "Acme Kettle EAN 5901234123457" => "Acme Kettle"
    return re.sub(r"EAN\s*\d+", "", query or "", flags=re.IGNORECASE).strip()


async def search_wikimedia_images(query: str, limit: int = 10) -> List[str]:
    q = clean_query(query)
    if len(q) < 3:
        return []

    params: Dict[str, Any] = {
        "action": "query",
        "generator": "search",
        "gsrnamespace": 6,
        "gsrsearch": f"File:{q}",
        "gsrlimit": limit,
        "prop": "imageinfo",
        "iiprop": "url",
        "format": "json",
        "origin": "*",
    }
    async with httpx.AsyncClient(timeout=15) as client:
        r = await client.get(COMMONS_API, params=params)
        r.raise_for_status()
        data = r.json()

    pages = ((data or {}).get("query") or {}).get("pages") or {}
    urls: List[str] = []
    for page in pages.values():
        info = (page.get("imageinfo") or [{}])[0]
        u = info.get("url")
        if isinstance(u, str) and u.lower().endswith(_IMAGE_EXTENSIONS):
            urls.append(u)
    return urls


async def search_media(title: str) -> List[str]:
    urls: List[str] = []

    try:
        urls.extend(await search_wikimedia_images(title))
    except Exception as e:
        logger.warning("Wikimedia search failed for %r: %s", title, e)

    if serpapi.serpapi_enabled():
        try:
            urls.extend(await serpapi.image_urls_for(clean_query(title)))
        except Exception as e:
            logger.warning("SerpAPI image search failed for %r: %s", title, e)

    return urls
