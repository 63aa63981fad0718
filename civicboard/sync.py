# civicboard/sync.py
"""Propagate committed primary-store writes into the search index.

Runs after the primary transaction has committed, typically as a FastAPI
background task. Index failures are logged and swallowed: the listing write
already succeeded and must not be reported as failed. Group labels that drift
with time are fixed by the reclassifier; content drift from a failed sync
needs `resync_all`.
"""
from datetime import datetime, tzinfo
from typing import Optional, Tuple

from elasticsearch import ApiError, NotFoundError, TransportError
from sqlalchemy.orm import Session

from . import crud
from .lifecycle import utcnow
from .models import LISTING_ACTIVE
from .schemas import SyncEvent
from .search_index import to_document
from .utils import logger


class IndexSynchronizer:

    def __init__(self, client, index: str, tz: tzinfo, refresh: bool = False):
        self.client = client
        self.index = index
        self.tz = tz
        self.refresh = refresh

    def handle(self, session_factory, event: SyncEvent, now: Optional[datetime] = None) -> bool:
        """Entry point for background dispatch; opens its own session."""
        if event.action == "delete":
            return self.listing_deleted(event.id)
        db = session_factory()
        try:
            return self.listing_saved(db, event.id, now=now)
        finally:
            db.close()

    def listing_saved(self, db: Session, listing_id: int, now: Optional[datetime] = None) -> bool:
        try:
            listing = crud.get_listing(db, listing_id)
            if listing is None:
                logger.warning("Listing %s vanished before index sync; removing from index", listing_id)
                return self.listing_deleted(listing_id)
            if listing.status != LISTING_ACTIVE:
                return self.listing_deleted(listing_id)
            ctx = crud.listing_context(db, listing)
            thumbnail = listing.images[0].image_url if listing.images else None
            doc = to_document(
                listing, ctx["topics"], ctx["host_type"],
                now if now is not None else utcnow(), self.tz, thumbnail=thumbnail,
            )
            self.client.index(index=self.index, id=str(listing_id), document=doc, refresh=self.refresh)
            logger.info("Indexed listing %s (group=%s)", listing_id, doc["sort_group"])
            return True
        except (ApiError, TransportError):
            logger.exception("Index write for listing %s failed", listing_id)
            return False
        except Exception:
            # the primary commit stands whatever happens here
            logger.exception("Unexpected error syncing listing %s", listing_id)
            return False

    def listing_deleted(self, listing_id: int) -> bool:
        try:
            self.client.delete(index=self.index, id=str(listing_id), refresh=self.refresh)
            logger.info("Removed listing %s from index", listing_id)
            return True
        except NotFoundError:
            return True
        except (ApiError, TransportError):
            logger.exception("Index delete for listing %s failed", listing_id)
            return False


def resync_all(db: Session, client, index: str, tz: tzinfo, now: Optional[datetime] = None,
               chunk_size: int = 500) -> Tuple[int, int]:
    """Bulk re-index every active listing with a fresh classification.

    Returns (indexed, failed). Transport errors propagate to the caller.
    """
    now = now if now is not None else utcnow()
    ok = failed = 0
    operations = []

    def flush():
        nonlocal ok, failed
        resp = client.bulk(operations=operations, refresh=True)
        for item in resp["items"]:
            result = item.get("index", {})
            if result.get("error"):
                failed += 1
                logger.error("Resync failed for listing %s: %s", result.get("_id"), result["error"])
            else:
                ok += 1
        operations.clear()

    for listing in crud.iter_active_listings(db, batch_size=chunk_size):
        ctx = crud.listing_context(db, listing)
        thumbnail = listing.images[0].image_url if listing.images else None
        operations.append({"index": {"_index": index, "_id": str(listing.id)}})
        operations.append(to_document(listing, ctx["topics"], ctx["host_type"], now, tz, thumbnail=thumbnail))
        if len(operations) >= chunk_size * 2:
            flush()
    if operations:
        flush()
    logger.info("Resynced %d listings into %s (%d failed)", ok, index, failed)
    return ok, failed
