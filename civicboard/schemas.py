# civicboard/schemas.py
from pydantic import BaseModel, Field, field_validator
from typing import List, Literal, Optional
from datetime import datetime

from .lifecycle import LifecycleGroup


def _split_topics(v):
    # accepted as "a,b" or ["a", "b"]
    if isinstance(v, str):
        v = v.split(",")
    return [t.strip() for t in (v or []) if t and t.strip()]


class ListingBase(BaseModel):
    participation_type: str = Field(..., max_length=32)
    title: str = Field(..., min_length=1)
    content: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    region: Optional[str] = None
    district: Optional[str] = None
    link: Optional[str] = None

    @field_validator("topics", mode="before")
    @classmethod
    def split_topics(cls, v):
        return _split_topics(v)


class ListingCreate(ListingBase):
    user_id: int
    images: List[str] = Field(default_factory=list)


class ListingUpdate(BaseModel):
    participation_type: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    topics: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    region: Optional[str] = None
    district: Optional[str] = None
    link: Optional[str] = None
    status: Optional[Literal["ACTIVE", "HIDDEN"]] = None
    images: Optional[List[str]] = None

    @field_validator("topics", mode="before")
    @classmethod
    def split_topics(cls, v):
        if v is None:
            return None
        return _split_topics(v)


class ListingOut(BaseModel):
    id: int
    user_id: int
    participation_type: str
    title: str
    content: Optional[str]
    region: Optional[str]
    district: Optional[str]
    link: Optional[str]
    status: str
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class SyncEvent(BaseModel):
    """What a committed primary-store write hands to the index synchronizer."""
    id: int
    action: str = "upsert"  # upsert | delete
    end_instant: Optional[datetime] = None
    created_instant: Optional[datetime] = None
    status: Optional[str] = None


class ListingCard(BaseModel):
    id: int
    title: Optional[str]
    thumbnail: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    region: Optional[str] = None
    district: Optional[str] = None
    participation_type: Optional[str] = None
    host_type: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    created_at: Optional[str] = None
    lifecycle: Optional[LifecycleGroup] = None
    cheer_count: int = 0
    is_cheered: bool = False
    is_author: bool = False


class SearchResponse(BaseModel):
    total: int
    page: int
    total_pages: int
    items: List[ListingCard]


class PassResultOut(BaseModel):
    group: str
    updated: int
    total: int
    version_conflicts: int
    took_ms: int
    error: Optional[str] = None
