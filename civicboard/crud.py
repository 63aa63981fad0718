# civicboard/crud.py
"""CRUD operations for `Listing` entities and their relational aggregates.

Every write helper commits; index synchronization happens after the commit,
in the service layer, never inside these transactions.
"""
from sqlalchemy import select, func, delete
from sqlalchemy.orm import Session
from typing import Dict, Any, Iterable, Iterator, List, Optional, Tuple
from .lifecycle import to_instant
from .models import Listing, ListingImage, ListingTopic, Topic, User, Cheer, LISTING_ACTIVE

LISTING_COLUMNS = (
    "user_id", "participation_type", "title", "content", "region", "district",
    "link", "status", "start_date", "end_date",
)
DATE_COLUMNS = ("start_date", "end_date")


def _columns(data: Dict[str, Any]) -> Dict[str, Any]:
    # stored as UTC so naive read-backs (SQLite) stay correct
    return {k: to_instant(v) if k in DATE_COLUMNS else v for k, v in data.items() if k in LISTING_COLUMNS}


def _topics_by_name(db: Session, names: Iterable[str]) -> List[Topic]:
    names = list(dict.fromkeys(names))
    if not names:
        return []
    found = {t.name: t for t in db.scalars(select(Topic).where(Topic.name.in_(names)))}
    out = []
    for name in names:
        topic = found.get(name)
        if topic is None:
            topic = Topic(name=name)
            db.add(topic)
        out.append(topic)
    return out


def create_listing(db: Session, data: Dict[str, Any], topics: Iterable[str] = (), images: Iterable[str] = ()):
    obj = Listing(**_columns(data))
    obj.topics = _topics_by_name(db, topics)
    obj.images = [ListingImage(image_url=url) for url in images]
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


def get_listing(db: Session, listing_id: int) -> Optional[Listing]:
    return db.get(Listing, listing_id)


def update_listing(db: Session, listing_id: int, updates: Dict[str, Any],
                   topics: Optional[Iterable[str]] = None, images: Optional[Iterable[str]] = None):
    obj = db.get(Listing, listing_id)
    if not obj:
        return None
    for k, v in _columns(updates).items():
        setattr(obj, k, v)
    if topics is not None:
        obj.topics = _topics_by_name(db, topics)
    if images is not None:
        obj.images = [ListingImage(image_url=url) for url in images]
    obj.updated_at = func.now()
    db.commit()
    db.refresh(obj)
    return obj


def delete_listing(db: Session, listing_id: int) -> bool:
    obj = db.get(Listing, listing_id)
    if not obj:
        return False
    db.execute(delete(Cheer).where(Cheer.listing_id == listing_id))
    db.delete(obj)
    db.commit()
    return True


def toggle_cheer(db: Session, listing_id: int, user_id: int) -> Optional[Tuple[bool, int]]:
    """Add or remove a cheer; returns (is_cheered, cheer_count) or None if no listing."""
    if db.get(Listing, listing_id) is None:
        return None
    existing = db.scalars(
        select(Cheer).where(Cheer.listing_id == listing_id, Cheer.user_id == user_id)
    ).first()
    if existing:
        db.delete(existing)
        cheered = False
    else:
        db.add(Cheer(listing_id=listing_id, user_id=user_id))
        cheered = True
    db.flush()
    count = db.scalar(select(func.count(Cheer.id)).where(Cheer.listing_id == listing_id))
    db.commit()
    return cheered, count


def listing_context(db: Session, listing: Listing) -> Dict[str, Any]:
    """Relational data the index document denormalizes."""
    host_type = db.scalar(select(User.user_type).where(User.id == listing.user_id))
    return {"topics": [t.name for t in listing.topics], "host_type": host_type}


def iter_active_listings(db: Session, batch_size: int = 500) -> Iterator[Listing]:
    last_id = 0
    while True:
        batch = db.scalars(
            select(Listing)
            .where(Listing.status == LISTING_ACTIVE, Listing.id > last_id)
            .order_by(Listing.id)
            .limit(batch_size)
        ).all()
        if not batch:
            return
        yield from batch
        last_id = batch[-1].id


# --- aggregates for the enrichment projector, keyed by listing id ---

def topic_names_by_listing(db: Session, ids: List[int]) -> Dict[int, List[str]]:
    rows = db.execute(
        select(ListingTopic.listing_id, Topic.name)
        .join(Topic, Topic.id == ListingTopic.topic_id)
        .where(ListingTopic.listing_id.in_(ids))
        .order_by(ListingTopic.listing_id, Topic.id)
    )
    out: Dict[int, List[str]] = {}
    for listing_id, name in rows:
        out.setdefault(listing_id, []).append(name)
    return out


def cheer_counts(db: Session, ids: List[int]) -> Dict[int, int]:
    rows = db.execute(
        select(Cheer.listing_id, func.count(Cheer.id))
        .where(Cheer.listing_id.in_(ids))
        .group_by(Cheer.listing_id)
    )
    return {listing_id: count for listing_id, count in rows}


def first_images(db: Session, ids: List[int]) -> Dict[int, str]:
    rows = db.execute(
        select(ListingImage.listing_id, ListingImage.image_url)
        .where(ListingImage.listing_id.in_(ids))
        .order_by(ListingImage.listing_id, ListingImage.id)
    )
    out: Dict[int, str] = {}
    for listing_id, url in rows:
        out.setdefault(listing_id, url)
    return out


def user_types(db: Session, user_ids: List[int]) -> Dict[int, str]:
    if not user_ids:
        return {}
    rows = db.execute(select(User.id, User.user_type).where(User.id.in_(user_ids)))
    return {uid: utype for uid, utype in rows}


def cheered_by(db: Session, user_id: int, ids: List[int]) -> set:
    rows = db.scalars(
        select(Cheer.listing_id).where(Cheer.user_id == user_id, Cheer.listing_id.in_(ids))
    )
    return set(rows)
