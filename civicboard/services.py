# civicboard/services.py
from sqlalchemy.orm import Session
from typing import Optional, Tuple

from . import crud, schemas
from .lifecycle import to_instant
from .models import Listing, OFFLINE_PARTICIPATION_TYPES
from .utils import logger

MAX_TOPICS = 2


def _check_topics(topics):
    if not 1 <= len(topics) <= MAX_TOPICS:
        raise ValueError(f"a listing needs 1 to {MAX_TOPICS} topics")


def _check_window(start, end):
    start, end = to_instant(start), to_instant(end)
    if start is not None and end is not None and end < start:
        raise ValueError("end_date is before start_date")


def _sync_event(obj: Listing, action: str = "upsert") -> schemas.SyncEvent:
    return schemas.SyncEvent(
        id=obj.id,
        action=action,
        end_instant=obj.end_date,
        created_instant=obj.created_at,
        status=obj.status,
    )


def create_listing(db: Session, payload: schemas.ListingCreate) -> Tuple[Listing, schemas.SyncEvent]:
    _check_topics(payload.topics)
    _check_window(payload.start_date, payload.end_date)
    data = payload.model_dump(exclude={"topics", "images"})
    if payload.participation_type not in OFFLINE_PARTICIPATION_TYPES:
        data["region"] = data["district"] = None
    obj = crud.create_listing(db, data, topics=payload.topics, images=payload.images)
    logger.info("Created listing %s", obj.id)
    return obj, _sync_event(obj)


def update_listing(db: Session, listing_id: int,
                   payload: schemas.ListingUpdate) -> Optional[Tuple[Listing, schemas.SyncEvent]]:
    updates = payload.model_dump(exclude_unset=True, exclude={"topics", "images"})
    if payload.topics is not None:
        _check_topics(payload.topics)
    current = crud.get_listing(db, listing_id)
    if current is None:
        return None
    _check_window(updates.get("start_date", current.start_date), updates.get("end_date", current.end_date))
    ptype = updates.get("participation_type", current.participation_type)
    if ptype not in OFFLINE_PARTICIPATION_TYPES:
        updates["region"] = updates["district"] = None
    obj = crud.update_listing(db, listing_id, updates, topics=payload.topics, images=payload.images)
    logger.info("Updated listing %s", listing_id)
    return obj, _sync_event(obj)


def delete_listing(db: Session, listing_id: int) -> Optional[schemas.SyncEvent]:
    if not crud.delete_listing(db, listing_id):
        return None
    logger.info("Deleted listing %s", listing_id)
    return schemas.SyncEvent(id=listing_id, action="delete")
