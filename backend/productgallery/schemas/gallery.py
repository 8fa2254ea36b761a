from pydantic import BaseModel, Field
from typing import Any, Dict, Optional, List

from productgallery.schemas.lookup import LookupResult


class GalleryRequest(BaseModel):
    title: Optional[str] = None
    identifier: Optional[str] = None


class GalleryItemOut(BaseModel):
    name: str
    is_synthetic: bool
    source_url: Optional[str] = None
    image_base64: Optional[str] = None   # PNG/JPEG bytes, base64


class GalleryEventOut(BaseModel):
    event_type: str
    timestamp: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class GalleryResponse(BaseModel):
    state: str
    title: Optional[str] = None
    manual_upload_required: bool
    lookup: Optional[LookupResult] = None
    items: List[GalleryItemOut]
    events: List[GalleryEventOut] = Field(default_factory=list)


class RegenerateResponse(BaseModel):
    index: int
    item: Optional[GalleryItemOut] = None   # None: generator returned nothing, keep the old slot
