from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional, List


class LookupResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    title: Optional[str] = None
    brand: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    source: Literal["OFF", "WIKIDATA"]


class LookupResponse(BaseModel):
    query: str
    variants: List[str]
    valid_ean13: bool
    result: Optional[LookupResult] = None


class GeneratedEan(BaseModel):
    ean: str
