# civicboard/api/routes.py
import math
from functools import lru_cache
from datetime import datetime
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from .. import config, crud, schemas, services
from ..db import SessionLocal, get_db
from ..enrich import enrich
from ..lifecycle import DayBoundaryError, LifecycleGroup, resolve_timezone, utcnow
from ..ranking import SearchFilters, SearchUnavailable, imminent_listings, search_listings, suggest_titles
from ..reclassify import Reclassifier
from ..search_index import get_client
from ..sync import IndexSynchronizer
from ..utils import logger

router = APIRouter()


@lru_cache(maxsize=1)
def get_reference_tz():
    return resolve_timezone(config.REFERENCE_TIMEZONE)


def get_index_client():
    return get_client()


def get_clock():
    return utcnow


@lru_cache(maxsize=1)
def get_reclassifier() -> Reclassifier:
    # one instance per process so its run lock serializes overlapping triggers
    return Reclassifier(get_client(), config.ES_INDEX_ALIAS, get_reference_tz())


def get_synchronizer(client=Depends(get_index_client)) -> IndexSynchronizer:
    return IndexSynchronizer(client, config.ES_INDEX_ALIAS, get_reference_tz())


def _csv(value: str | None) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/listings/search", response_model=schemas.SearchResponse)
def search(
    q: str | None = Query(None),
    topics: str | None = Query(None),
    region: str | None = Query(None),
    district: str | None = Query(None),
    participation_type: str | None = Query(None),
    host_type: str | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    group: LifecycleGroup | None = Query(None),
    page: int = Query(1, ge=1),
    size: int = Query(config.SEARCH_PAGE_SIZE, ge=1, le=100),
    stored: bool = Query(True),
    viewer_id: int | None = Query(None),
    db: Session = Depends(get_db),
    client=Depends(get_index_client),
    clock=Depends(get_clock),
):
    filters = SearchFilters(
        q=q, topics=_csv(topics), region=region, district=_csv(district),
        participation_type=_csv(participation_type), host_type=host_type,
        start_date=start_date, end_date=end_date, group=group, page=page, size=size,
    )
    try:
        result = search_listings(
            client, config.ES_INDEX_ALIAS, filters, clock(), get_reference_tz(), use_stored_group=stored
        )
    except (SearchUnavailable, DayBoundaryError) as e:
        logger.error("Search failed: %s", e)
        raise HTTPException(status_code=503, detail="Search is temporarily unavailable, please retry")
    return {
        "total": result.total,
        "page": page,
        "total_pages": math.ceil(result.total / size),
        "items": enrich(db, result.hits, viewer_id=viewer_id),
    }


@router.get("/listings/imminent", response_model=List[schemas.ListingCard])
def imminent(
    size: int = Query(20, ge=1, le=100),
    stored: bool = Query(True),
    viewer_id: int | None = Query(None),
    db: Session = Depends(get_db),
    client=Depends(get_index_client),
    clock=Depends(get_clock),
):
    try:
        result = imminent_listings(
            client, config.ES_INDEX_ALIAS, clock(), get_reference_tz(), size=size, use_stored_group=stored
        )
    except (SearchUnavailable, DayBoundaryError) as e:
        logger.error("Imminent feed failed: %s", e)
        raise HTTPException(status_code=503, detail="Search is temporarily unavailable, please retry")
    return enrich(db, result.hits, viewer_id=viewer_id)


@router.get("/listings/suggest", response_model=List[str])
def suggest(q: str | None = Query(None), client=Depends(get_index_client)):
    try:
        return suggest_titles(client, config.ES_INDEX_ALIAS, q)
    except SearchUnavailable as e:
        logger.error("Suggestions failed: %s", e)
        raise HTTPException(status_code=503, detail="Suggestions are temporarily unavailable")


@router.get("/listings/{listing_id}", response_model=schemas.ListingOut)
def get_listing(listing_id: int, db: Session = Depends(get_db)):
    obj = crud.get_listing(db, listing_id)
    if not obj:
        raise HTTPException(status_code=404, detail="Listing not found")
    return obj


@router.post("/listings", response_model=schemas.ListingOut, status_code=201)
def create_listing(
    payload: schemas.ListingCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    synchronizer: IndexSynchronizer = Depends(get_synchronizer),
):
    try:
        obj, event = services.create_listing(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    background_tasks.add_task(synchronizer.handle, SessionLocal, event)
    return obj


@router.patch("/listings/{listing_id}", response_model=schemas.ListingOut)
def update_listing(
    listing_id: int,
    payload: schemas.ListingUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    synchronizer: IndexSynchronizer = Depends(get_synchronizer),
):
    try:
        res = services.update_listing(db, listing_id, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not res:
        raise HTTPException(status_code=404, detail="Listing not found")
    obj, event = res
    background_tasks.add_task(synchronizer.handle, SessionLocal, event)
    return obj


@router.delete("/listings/{listing_id}")
def delete_listing(
    listing_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    synchronizer: IndexSynchronizer = Depends(get_synchronizer),
):
    event = services.delete_listing(db, listing_id)
    if not event:
        raise HTTPException(status_code=404, detail="Listing not found")
    background_tasks.add_task(synchronizer.handle, SessionLocal, event)
    return {"status": "deleted"}


@router.post("/listings/{listing_id}/cheer")
def toggle_cheer(listing_id: int, user_id: int = Query(...), db: Session = Depends(get_db)):
    res = crud.toggle_cheer(db, listing_id, user_id)
    if res is None:
        raise HTTPException(status_code=404, detail="Listing not found")
    cheered, count = res
    return {"is_cheered": cheered, "cheer_count": count}


@router.post("/admin/reclassify", response_model=List[schemas.PassResultOut])
def trigger_reclassify(reclassifier: Reclassifier = Depends(get_reclassifier)):
    try:
        results = reclassifier.run_once()
    except DayBoundaryError as e:
        logger.exception("Reclassification aborted: %s", e)
        raise HTTPException(status_code=500, detail="Reclassification failed")
    return [
        schemas.PassResultOut(
            group=r.group.name, updated=r.updated, total=r.total,
            version_conflicts=r.version_conflicts, took_ms=r.took_ms, error=r.error,
        )
        for r in results
    ]
