import base64
import logging
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from productgallery.core.events import EventEmitter, EventRecorder, PipelineEvent
from productgallery.core.gemini import GeminiRateLimitError, GeminiRequestError
from productgallery.pipeline.assembler import GalleryAssembler
from productgallery.pipeline.models import GalleryItem, PipelineConfig
from productgallery.pipeline.session import Collaborators, GallerySessionError, SearchSession, summarize
from productgallery.schemas.gallery import (
    GalleryEventOut,
    GalleryItemOut,
    GalleryRequest,
    GalleryResponse,
    RegenerateResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["gallery"])

SessionFactory = Callable[[], SearchSession]


def get_session_factory() -> SessionFactory:
    return SearchSession


def get_collaborators() -> Collaborators:
    return Collaborators()


def _item_out(item: GalleryItem) -> GalleryItemOut:
    return GalleryItemOut(
        name=item.name,
        is_synthetic=item.is_synthetic,
        source_url=item.source_url,
        image_base64=base64.b64encode(item.data).decode("utf-8") if item.data else None,
    )


def _events_out(events: List[PipelineEvent]) -> List[GalleryEventOut]:
    return [GalleryEventOut(**e.to_dict()) for e in events]


def _rate_limited(e: GeminiRateLimitError) -> HTTPException:
    # Return 429 (NOT 422), and include Retry-After when we have it.
    headers = {}
    if e.retry_after_seconds is not None:
        headers["Retry-After"] = str(int(e.retry_after_seconds))
    return HTTPException(
        status_code=429,
        detail={"error": "rate_limited", "message": e.message, "retry_after_seconds": e.retry_after_seconds},
        headers=headers,
    )


def _rate_limit_cause(e: BaseException) -> Optional[GeminiRateLimitError]:
    cause = e.__cause__
    while cause is not None:
        if isinstance(cause, GeminiRateLimitError):
            return cause
        cause = cause.__cause__
    return None


@router.post("/gallery", response_model=GalleryResponse)
async def gallery(req: GalleryRequest, session_factory: SessionFactory = Depends(get_session_factory)):
    """
    Runs one search session. When no photo survives verification the response
    has `manual_upload_required=true` and no items; use /v1/gallery/manual.
    """
    if not (req.title or "").strip() and not (req.identifier or "").strip():
        raise HTTPException(status_code=422, detail="Provide a title or an identifier")

    session = session_factory()
    try:
        result = await session.run(title=req.title, identifier=req.identifier)
    except GallerySessionError as e:
        cause = _rate_limit_cause(e)
        if cause is not None:
            raise _rate_limited(cause)
        raise HTTPException(status_code=422, detail={"error": "search_failed", "message": e.message})

    logger.info("gallery search done: %s", summarize(result))
    return GalleryResponse(
        state=result.state.value,
        title=result.title,
        manual_upload_required=result.manual_upload_required,
        lookup=result.lookup,
        items=[_item_out(i) for i in result.gallery],
        events=_events_out(result.events),
    )


@router.post("/gallery/manual", response_model=GalleryResponse)
async def gallery_manual(
    title: str = Form(...),
    image: UploadFile = File(...),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """
    Manual fallback: build the gallery around a photo the user supplied.
    """
    img_bytes = await image.read()
    if not img_bytes:
        raise HTTPException(status_code=422, detail="Empty upload")

    events = EventEmitter()
    recorder = EventRecorder(events)
    config = PipelineConfig.from_settings()
    assembler = GalleryAssembler(
        collaborators.clean,
        collaborators.generate,
        gallery_size=config.gallery_size,
        events=events,
    )
    items = await assembler.assemble_manual(img_bytes, title)

    return GalleryResponse(
        state="done",
        title=title,
        manual_upload_required=False,
        items=[_item_out(i) for i in items],
        events=_events_out(recorder.events),
    )


@router.post("/gallery/regenerate", response_model=RegenerateResponse)
async def gallery_regenerate(
    title: str = Form(...),
    index: int = Form(...),
    image: UploadFile = File(...),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """
    Redo one slot of a gallery the client already holds. `image` is the seed
    (item 1 of that gallery); slot 0 is cleaned again, others get a new view.
    """
    seed = await image.read()
    if not seed:
        raise HTTPException(status_code=422, detail="Empty upload")

    config = PipelineConfig.from_settings()
    assembler = GalleryAssembler(collaborators.clean, collaborators.generate, gallery_size=config.gallery_size)

    try:
        item = await assembler.regenerate_slot(seed, title, index)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except GeminiRateLimitError as e:
        raise _rate_limited(e)
    except GeminiRequestError as e:
        raise HTTPException(
            status_code=422,
            detail={"error": "gemini_error", "message": e.message, "status_code": e.status_code},
        )
    except Exception as e:
        logger.warning("slot %d regeneration failed: %s", index, e)
        raise HTTPException(status_code=422, detail={"error": "regenerate_failed", "message": str(e)})

    return RegenerateResponse(index=index, item=_item_out(item) if item else None)
