# civicboard/search_index.py
"""Elasticsearch client, index mapping and listing document projection."""
import re
from datetime import datetime, tzinfo
from typing import Any, Dict, Iterable, List, Optional

from elasticsearch import Elasticsearch
from elasticsearch import ConnectionError as ESConnectionError

from . import config
from .lifecycle import classify, to_es_date
from .utils import logger, retry

_PUNCT_RE = re.compile(r"[^\w\s]")

DATE_FIELD = {
    "type": "date",
    "format": "strict_date_optional_time||epoch_millis",
}

_client: Optional[Elasticsearch] = None


def get_client() -> Elasticsearch:
    global _client
    if _client is None:
        _client = Elasticsearch(config.ELASTICSEARCH_NODE)
    return _client


def index_mapping() -> Dict[str, Any]:
    return {
        "settings": {
            "index": {
                "analysis": {
                    "filter": {
                        "edge_ngram_filter": {"type": "edge_ngram", "min_gram": 2, "max_gram": 10},
                    },
                    "analyzer": {
                        "partial_analyzer": {
                            "type": "custom",
                            "tokenizer": "standard",
                            "filter": ["lowercase", "edge_ngram_filter"],
                        },
                        "suggest_analyzer": {
                            "type": "custom",
                            "tokenizer": "standard",
                            "filter": ["lowercase"],
                        },
                    },
                },
            },
        },
        "mappings": {
            "properties": {
                "id": {"type": "integer"},
                "user_id": {"type": "integer"},
                "host_type": {"type": "keyword"},
                "participation_type": {"type": "keyword"},
                "title": {
                    "type": "text",
                    "fields": {"partial": {"type": "text", "analyzer": "partial_analyzer"}},
                },
                "content": {
                    "type": "text",
                    "fields": {"partial": {"type": "text", "analyzer": "partial_analyzer"}},
                },
                "suggest": {"type": "completion", "analyzer": "suggest_analyzer"},
                "topics": {"type": "keyword"},
                "region": {"type": "keyword"},
                "district": {"type": "keyword"},
                "link": {"type": "keyword"},
                "thumbnail": {"type": "keyword"},
                "start_date": dict(DATE_FIELD, ignore_malformed=True),
                # malformed end dates are not indexed, so they behave as perpetual
                "end_date": dict(DATE_FIELD, ignore_malformed=True),
                "created_at": DATE_FIELD,
                "updated_at": DATE_FIELD,
                "sort_group": {"type": "byte"},
                "sort_end": {"type": "long"},
            }
        },
    }


@retry(ESConnectionError)
def ensure_index(client: Elasticsearch, index: str, recreate: bool = False) -> bool:
    """Create the index with our mapping; returns True if it was created."""
    exists = bool(client.indices.exists(index=index))
    if exists and not recreate:
        return False
    if exists:
        logger.info("Dropping index %s", index)
        client.indices.delete(index=index)
    body = index_mapping()
    client.indices.create(index=index, settings=body["settings"], mappings=body["mappings"])
    logger.info("Created index %s", index)
    return True


def to_document(listing, topics: Iterable[str], host_type: Optional[str],
                now: datetime, tz: tzinfo, thumbnail: Optional[str] = None) -> Dict[str, Any]:
    """Project a primary-store listing into its index document.

    The lifecycle fields are computed for `now`, the instant of writing.
    """
    c = classify(listing.end_date, now, tz)
    topics = list(topics)
    return {
        "id": listing.id,
        "user_id": listing.user_id,
        "host_type": host_type,
        "participation_type": listing.participation_type,
        "title": listing.title,
        "content": listing.content,
        "topics": topics,
        "region": listing.region,
        "district": listing.district,
        "link": listing.link,
        "thumbnail": thumbnail,
        "suggest": {"input": suggest_inputs(listing.title, topics), "weight": 10},
        "start_date": _safe_date(listing.start_date),
        "end_date": _safe_date(listing.end_date),
        "created_at": _safe_date(listing.created_at) or to_es_date(now),
        "updated_at": to_es_date(now),
        "sort_group": int(c.group),
        "sort_end": c.sort_key,
    }


def _safe_date(value) -> Optional[str]:
    try:
        return to_es_date(value)
    except ValueError:
        logger.warning("Dropping unparseable date %r from index document", value)
        return None


def suggest_inputs(title: Optional[str], topics: Iterable[str]) -> List[str]:
    """Completion inputs: title words of two or more characters, the whole title, topics."""
    out: List[str] = []
    if title and title.strip():
        out.extend(w for w in _PUNCT_RE.sub(" ", title).split() if len(w) >= 2)
        out.append(title.strip())
    out.extend(t for t in topics if t)
    return list(dict.fromkeys(out))
