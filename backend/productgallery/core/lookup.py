import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import httpx
from pydantic import ValidationError

from productgallery.core.cache import TTLCache
from productgallery.core.identifiers import digits_only, identifier_variants, is_valid_ean13
from productgallery.schemas.lookup import LookupResult

logger = logging.getLogger(__name__)

OFF_BASE = "https://world.openfoodfacts.org/api/v2/product"
WIKIDATA_SPARQL = "https://query.wikidata.org/sparql"

DEFAULT_TIMEOUT_SECONDS = 4.0

USER_AGENT = "ProductGallery/0.1 (+https://github.com/)"

LookupFn = Callable[[str, float], Awaitable[Optional[LookupResult]]]


class InvalidIdentifierError(ValueError):
    """A well-formed 13-digit code whose check digit does not match."""


def cache_key(identifier: str) -> str:
    return f"lookup:{identifier}"


def _http_images(values: List[Any]) -> List[str]:
    # Keep order, drop repeats and anything that is not an absolute http(s) URL
    out = [v for v in values if isinstance(v, str) and v.startswith("http")]
    return list(dict.fromkeys(out))


async def fetch_from_off(client: httpx.AsyncClient, ean: str) -> Optional[LookupResult]:
    """
    Open Food Facts product endpoint (fastest for FMCG).
    Returns None when the product is missing or carries nothing useful.
    """
    r = await client.get(f"{OFF_BASE}/{ean}.json")
    if r.status_code != 200:
        return None
    try:
        data = r.json()
    except Exception:
        return None

    p = (data or {}).get("product")
    if not isinstance(p, dict):
        return None

    images = _http_images([
        p.get("image_url"),
        p.get("image_front_url"),
        p.get("image_ingredients_url"),
        p.get("image_nutrition_url"),
    ])
    title = p.get("product_name") or p.get("product_name_pl") or p.get("generic_name") or None
    brand = p.get("brands") or None

    if not title and not brand and not images:
        return None

    return LookupResult(identifier=ean, title=title, brand=brand, images=images, source="OFF")


def _wikidata_query(ean: str) -> str:
    return f"""
    SELECT ?item ?itemLabel ?brandLabel ?image WHERE {{
      {{ ?item wdt:P3962 "{ean}" . }}
      UNION
      {{ ?item wdt:P5283 "{ean}" . }}
      OPTIONAL {{ ?item wdt:P1716 ?brand . }}
      OPTIONAL {{ ?item wdt:P154 ?image . }}
      OPTIONAL {{ ?item wdt:P18  ?image . }}
      SERVICE wikibase:label {{ bd:serviceParam wikibase:language "pl,en". }}
    }}
    LIMIT 10
    """.strip()


async def fetch_from_wikidata(client: httpx.AsyncClient, ean: str) -> Optional[LookupResult]:
    r = await client.get(
        WIKIDATA_SPARQL,
        params={"format": "json", "query": _wikidata_query(ean)},
        headers={"Accept": "application/sparql-results+json"},
    )
    if r.status_code != 200:
        return None
    try:
        data = r.json()
    except Exception:
        return None

    bindings = ((data or {}).get("results") or {}).get("bindings") or []
    if not bindings:
        return None

    first = bindings[0]
    title = (first.get("itemLabel") or {}).get("value")
    brand = (first.get("brandLabel") or {}).get("value")
    images = _http_images([(b.get("image") or {}).get("value") for b in bindings])

    return LookupResult(identifier=ean, title=title, brand=brand, images=images, source="WIKIDATA")


async def lookup_free(identifier: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Optional[LookupResult]:
    """
    Open Food Facts first, Wikidata second.
    Network errors propagate; the caller decides what "failed" means.
    """
    async with httpx.AsyncClient(timeout=timeout, headers={"User-Agent": USER_AGENT}) as client:
        off = await fetch_from_off(client, identifier)
        if off:
            return off
        return await fetch_from_wikidata(client, identifier)


def _cached_result(cache: TTLCache, identifier: str) -> Optional[LookupResult]:
    raw = cache.get(cache_key(identifier))
    if raw is None:
        return None
    try:
        return LookupResult.model_validate(raw)
    except ValidationError:
        cache.delete(cache_key(identifier))
        return None


async def lookup_identifier(
    raw: str,
    cache: TTLCache,
    *,
    lookup: LookupFn = lookup_free,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ttl_ms: Optional[int] = None,
) -> Optional[LookupResult]:
    """
    Resolve a raw barcode against the free databases.

    - Invalid EAN-13 checksum => InvalidIdentifierError (before any I/O)
    - Cache hit on any variant short-circuits
    - Each variant gets its own deadline; timeouts/network errors => absent
    """
    code = digits_only(raw)
    if len(code) == 13 and not is_valid_ean13(code):
        raise InvalidIdentifierError("Invalid EAN-13 (checksum mismatch).")

    variants = identifier_variants(code)
    if not variants:
        return None

    for v in variants:
        hit = _cached_result(cache, v)
        if hit:
            logger.debug("lookup cache hit for %s", v)
            return hit

    for v in variants:
        try:
            result = await asyncio.wait_for(lookup(v, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("lookup for %s timed out after %.1fs", v, timeout)
            continue
        except httpx.HTTPError as e:
            logger.info("lookup for %s failed: %s", v, e)
            continue

        if result:
            cache.set(cache_key(v), result.model_dump(mode="json"), ttl_ms)
            return result

    return None


def search_title_for(result: Optional[LookupResult]) -> Optional[str]:
    """
    Title to search images with: "<brand> <title>" unless the title already
    names the brand.
    """
    if not result:
        return None
    title = (result.title or "").strip()
    brand = (result.brand or "").split(",")[0].strip()
    if title and brand and brand.lower() not in title.lower():
        return f"{brand} {title}"
    return title or brand or None

