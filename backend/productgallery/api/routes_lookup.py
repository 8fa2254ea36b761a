from fastapi import APIRouter, Depends, HTTPException

from productgallery.core.cache import TTLCache
from productgallery.core.config import settings
from productgallery.core.identifiers import digits_only, generate_ean13, identifier_variants, is_valid_ean13
from productgallery.core.lookup import InvalidIdentifierError, lookup_identifier
from productgallery.pipeline.session import shared_cache
from productgallery.schemas.lookup import GeneratedEan, LookupResponse

router = APIRouter(prefix="/v1", tags=["lookup"])


def get_cache() -> TTLCache:
    return shared_cache()


@router.get("/lookup/{code}", response_model=LookupResponse)
async def lookup(code: str, cache: TTLCache = Depends(get_cache)):
    """
    Barcode => free product databases (Open Food Facts, Wikidata), cached.
    """
    digits = digits_only(code)
    if not digits:
        raise HTTPException(status_code=422, detail="Identifier must contain digits")

    try:
        result = await lookup_identifier(
            digits,
            cache,
            timeout=settings.LOOKUP_TIMEOUT_SECONDS,
            ttl_ms=settings.LOOKUP_CACHE_TTL_DAYS * 24 * 60 * 60 * 1000,
        )
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if result is None:
        raise HTTPException(status_code=404, detail="Not found in free product databases")

    return LookupResponse(
        query=code,
        variants=identifier_variants(digits),
        valid_ean13=is_valid_ean13(digits),
        result=result,
    )


@router.post("/ean/generate", response_model=GeneratedEan)
def generate_ean():
    """
    In-store EAN-13 (290 prefix) for a product that has no barcode yet.
    Not registered with GS1.
    """
    return GeneratedEan(ean=generate_ean13())
