# civicboard/ranking.py
"""Search queries whose order follows the lifecycle ranking.

Results are ordered by lifecycle group ascending (due today, future,
perpetual, expired), then most recently created first. The group either
comes from the stored `sort_group` field or is recomputed per document by a
painless script rendered from `lifecycle.group_ranges`, so both paths agree
for any `(end_date, now)`.
"""
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Dict, List, Optional

from elasticsearch import ApiError, TransportError
from pydantic import BaseModel, Field

from .lifecycle import DayWindow, LifecycleGroup, day_window, group_ranges, to_es_date
from .utils import logger

_PAINLESS_OPS = {"lt": "<", "lte": "<=", "gt": ">", "gte": ">="}


class SearchUnavailable(RuntimeError):
    """The index store could not answer; callers may retry."""


class SearchFilters(BaseModel):
    q: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    region: Optional[str] = None
    district: List[str] = Field(default_factory=list)
    participation_type: List[str] = Field(default_factory=list)
    host_type: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    group: Optional[LifecycleGroup] = None
    page: int = Field(1, ge=1)
    size: int = Field(8, ge=1, le=100)


@dataclass
class SearchPage:
    total: int
    hits: List[Dict[str, Any]] = field(default_factory=list)


def group_predicate(group: LifecycleGroup, window: DayWindow) -> Dict[str, List[Dict[str, Any]]]:
    """Bool clauses matching documents whose end_date puts them in `group`."""
    bounds = group_ranges(window)[group]
    if bounds is None:
        return {"filter": [], "must_not": [{"exists": {"field": "end_date"}}]}
    return {
        "filter": [
            {"exists": {"field": "end_date"}},
            {"range": {"end_date": dict(bounds, format="epoch_millis")}},
        ],
        "must_not": [],
    }


def group_script(window: DayWindow) -> Dict[str, Any]:
    """Painless script computing the lifecycle group of one document."""
    lines = [
        "if (doc['end_date'].size() == 0) return %d;" % LifecycleGroup.PERPETUAL,
        "long e = doc['end_date'].value.toInstant().toEpochMilli();",
    ]
    params: Dict[str, int] = {}
    for group, bounds in group_ranges(window).items():
        if bounds is None:
            continue
        conds = []
        for op, bound in bounds.items():
            name = "g%d_%s" % (group, op)
            params[name] = bound
            conds.append("e %s params.%s" % (_PAINLESS_OPS[op], name))
        lines.append("if (%s) return %d;" % (" && ".join(conds), group))
    lines.append("return %d;" % LifecycleGroup.PERPETUAL)
    return {"lang": "painless", "source": "\n".join(lines), "params": params}


def build_filter_query(filters: SearchFilters) -> Dict[str, Any]:
    must: List[Dict[str, Any]] = []
    flt: List[Dict[str, Any]] = []
    if filters.q and filters.q.strip():
        must.append({
            "multi_match": {
                "query": filters.q.strip(),
                "fields": ["title^10", "title.partial^1", "content^3", "content.partial^0.5"],
                "type": "most_fields",
                "operator": "and",
                # every term up to two, 75% of them beyond that
                "minimum_should_match": "2<75%",
            }
        })
    if filters.topics:
        flt.append({"terms": {"topics": filters.topics}})
    if filters.region:
        flt.append({"term": {"region": filters.region}})
        if filters.district:
            flt.append({"terms": {"district": filters.district}})
    if filters.participation_type:
        flt.append({"terms": {"participation_type": filters.participation_type}})
    if filters.host_type:
        flt.append({"term": {"host_type": filters.host_type}})
    if filters.start_date:
        flt.append({"range": {"start_date": {"gte": to_es_date(filters.start_date)}}})
    if filters.end_date:
        flt.append({"range": {"end_date": {"lte": to_es_date(filters.end_date)}}})
    if not must and not flt:
        return {"match_all": {}}
    return {"bool": {"must": must, "filter": flt}}


def stored_sort() -> List[Dict[str, Any]]:
    return [
        {"sort_group": {"order": "asc", "missing": "_last"}},
        {"created_at": {"order": "desc"}},
        {"id": {"order": "desc"}},
    ]


def inline_sort(window: DayWindow) -> List[Dict[str, Any]]:
    return [
        {"_script": {"type": "number", "script": group_script(window), "order": "asc"}},
        {"created_at": {"order": "desc"}},
        {"id": {"order": "desc"}},
    ]


def build_search_request(filters: SearchFilters, now: datetime, tz: tzinfo,
                         use_stored_group: bool = True) -> Dict[str, Any]:
    query = build_filter_query(filters)
    window = day_window(now, tz)

    if filters.group is not None:
        if use_stored_group:
            extra = {"filter": [{"term": {"sort_group": int(filters.group)}}], "must_not": []}
        else:
            extra = group_predicate(filters.group, window)
        if "bool" not in query:
            query = {"bool": {"must": [], "filter": []}}
        query["bool"]["filter"].extend(extra["filter"])
        if extra["must_not"]:
            query["bool"]["must_not"] = extra["must_not"]

    return {
        "query": query,
        "sort": stored_sort() if use_stored_group else inline_sort(window),
        "from_": (filters.page - 1) * filters.size,
        "size": filters.size,
        "track_total_hits": True,
    }


def build_imminent_request(now: datetime, tz: tzinfo, size: int = 20,
                           use_stored_group: bool = True) -> Dict[str, Any]:
    """Listings ending later today, soonest first."""
    if use_stored_group:
        query = {"bool": {"filter": [{"term": {"sort_group": int(LifecycleGroup.DUE_TODAY)}}]}}
        sort = [{"sort_end": {"order": "asc"}}, {"id": {"order": "asc"}}]
    else:
        pred = group_predicate(LifecycleGroup.DUE_TODAY, day_window(now, tz))
        query = {"bool": {"filter": pred["filter"]}}
        sort = [{"end_date": {"order": "asc"}}, {"id": {"order": "asc"}}]
    return {"query": query, "sort": sort, "from_": 0, "size": size, "track_total_hits": True}


def _execute(client, index: str, **request) -> Dict[str, Any]:
    try:
        return client.search(index=index, **request)
    except (ApiError, TransportError) as e:
        logger.error("Search on %s failed: %s", index, e)
        raise SearchUnavailable("search index unavailable") from e


def search_listings(client, index: str, filters: SearchFilters, now: datetime, tz: tzinfo,
                    use_stored_group: bool = True) -> SearchPage:
    request = build_search_request(filters, now, tz, use_stored_group=use_stored_group)
    resp = _execute(client, index, **request)
    total = resp["hits"]["total"]["value"]
    hits = []
    for h in resp["hits"]["hits"]:
        source = dict(h["_source"])
        if not use_stored_group and h.get("sort"):
            # the freshly computed group, not the possibly stale stored one
            source["sort_group"] = int(h["sort"][0])
        hits.append(source)
    return SearchPage(total=total, hits=hits)


def imminent_listings(client, index: str, now: datetime, tz: tzinfo, size: int = 20,
                      use_stored_group: bool = True) -> SearchPage:
    request = build_imminent_request(now, tz, size=size, use_stored_group=use_stored_group)
    resp = _execute(client, index, **request)
    hits = []
    for h in resp["hits"]["hits"]:
        source = dict(h["_source"])
        if not use_stored_group:
            source["sort_group"] = int(LifecycleGroup.DUE_TODAY)
        hits.append(source)
    return SearchPage(total=resp["hits"]["total"]["value"], hits=hits)


def suggest_titles(client, index: str, prefix: Optional[str], size: int = 5) -> List[str]:
    """Completion suggestions for a partially typed keyword."""
    if not prefix or not prefix.strip():
        return []
    resp = _execute(
        client, index,
        source=False,
        suggest={
            "board-suggestions": {
                "prefix": prefix.strip(),
                "completion": {
                    "field": "suggest",
                    "size": size,
                    "skip_duplicates": True,
                    "fuzzy": {"fuzziness": "AUTO"},
                },
            }
        },
    )
    return [o["text"] for o in resp["suggest"]["board-suggestions"][0]["options"]]
