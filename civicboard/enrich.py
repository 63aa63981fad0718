# civicboard/enrich.py
"""Merge search hits with relational aggregates into listing cards.

Aggregates are fetched in bulk, keyed by listing id, and attached to each
hit. The output keeps the exact order of the hits; nothing here sorts.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import crud
from .lifecycle import LifecycleGroup
from .schemas import ListingCard


def enrich(db: Session, hits: List[Dict[str, Any]], viewer_id: Optional[int] = None) -> List[ListingCard]:
    if not hits:
        return []
    ids = [int(h["id"]) for h in hits]
    user_ids = sorted({h["user_id"] for h in hits if h.get("user_id") is not None})

    topics = crud.topic_names_by_listing(db, ids)
    cheers = crud.cheer_counts(db, ids)
    images = crud.first_images(db, ids)
    hosts = crud.user_types(db, user_ids)
    mine = crud.cheered_by(db, viewer_id, ids) if viewer_id is not None else set()

    cards = []
    for hit in hits:
        listing_id = int(hit["id"])
        group = hit.get("sort_group")
        cards.append(ListingCard(
            id=listing_id,
            title=hit.get("title"),
            thumbnail=images.get(listing_id) or hit.get("thumbnail"),
            topics=topics.get(listing_id) or list(hit.get("topics") or []),
            region=hit.get("region"),
            district=hit.get("district"),
            participation_type=hit.get("participation_type"),
            host_type=hit.get("host_type") or hosts.get(hit.get("user_id")),
            start_date=hit.get("start_date"),
            end_date=hit.get("end_date"),
            created_at=hit.get("created_at"),
            lifecycle=LifecycleGroup(group) if group is not None else None,
            cheer_count=cheers.get(listing_id, 0),
            is_cheered=listing_id in mine,
            is_author=viewer_id is not None and viewer_id == hit.get("user_id"),
        ))
    return cards
