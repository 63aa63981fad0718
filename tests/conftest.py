# tests/conftest.py
import operator
import os
import re
import tempfile
from datetime import datetime, timedelta, timezone

_DB_DIR = tempfile.mkdtemp(prefix="civicboard-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["SCHEDULER_ENABLED"] = "0"
os.environ["REFERENCE_TIMEZONE"] = "+09:00"

import pytest  # noqa: E402
from elasticsearch import ConnectionError as ESConnectionError  # noqa: E402

from civicboard.db import Base, engine, SessionLocal  # noqa: E402
from civicboard.lifecycle import (  # noqa: E402
    MalformedInstantError, resolve_timezone, sort_key_for, to_instant, to_millis,
)
from civicboard.models import User  # noqa: E402

KST = resolve_timezone("+09:00")
DATE_FIELDS = ("start_date", "end_date", "created_at", "updated_at")
_OPS = {"lt": operator.lt, "lte": operator.le, "gt": operator.gt, "gte": operator.ge}
_PAINLESS_OPS = {"<": operator.lt, "<=": operator.le, ">": operator.gt, ">=": operator.ge}
_MISSING_LINE = re.compile(r"if \(doc\['end_date'\]\.size\(\) == 0\) return (\d+);")
_IF_LINE = re.compile(r"if \((.+)\) return (\d+);")
_COND = re.compile(r"e (<=|>=|<|>) params\.(\w+)")
_RETURN_LINE = re.compile(r"return (\d+);")


def kst(*args) -> datetime:
    """A KST wall-clock time as an aware UTC datetime."""
    return datetime(*args, tzinfo=KST).astimezone(timezone.utc)


def _as_number(field, value):
    if value is None:
        return None
    if field in DATE_FIELDS:
        try:
            dt = to_instant(value)
        except MalformedInstantError:
            return None  # ignore_malformed: the field is simply not indexed
        return None if dt is None else to_millis(dt)
    return value


def _bound(field, value, fmt):
    if fmt == "epoch_millis" or isinstance(value, (int, float)):
        return value
    return _as_number(field, value)


def _matches(doc, query) -> bool:
    if not query or "match_all" in query:
        return True
    if "bool" in query:
        b = query["bool"]
        return (
            all(_matches(doc, q) for q in b.get("must", []))
            and all(_matches(doc, q) for q in b.get("filter", []))
            and not any(_matches(doc, q) for q in b.get("must_not", []))
        )
    if "term" in query:
        (field, value), = query["term"].items()
        current = doc.get(field)
        return value in current if isinstance(current, list) else current == value
    if "terms" in query:
        (field, values), = query["terms"].items()
        current = doc.get(field)
        current = current if isinstance(current, list) else [current]
        return any(v in current for v in values)
    if "exists" in query:
        field = query["exists"]["field"]
        return _as_number(field, doc.get(field)) is not None
    if "range" in query:
        (field, spec), = query["range"].items()
        value = _as_number(field, doc.get(field))
        if value is None:
            return False
        fmt = spec.get("format")
        return all(_OPS[op](value, _bound(field, b, fmt)) for op, b in spec.items() if op in _OPS)
    if "multi_match" in query:
        words = query["multi_match"]["query"].lower().split()
        text = " ".join(str(doc.get(f) or "") for f in ("title", "content")).lower()
        return all(w in text for w in words)
    raise AssertionError(f"fake index does not understand {query}")


def _script_group(doc, script) -> int:
    """Run the rendered sort script line by line against one document."""
    end = _as_number("end_date", doc.get("end_date"))
    params = script["params"]
    for line in script["source"].splitlines():
        line = line.strip()
        if line == "long e = doc['end_date'].value.toInstant().toEpochMilli();":
            continue
        m = _MISSING_LINE.fullmatch(line)
        if m:
            if end is None:
                return int(m.group(1))
            continue
        m = _IF_LINE.fullmatch(line)
        if m:
            conds = [_COND.fullmatch(c.strip()) for c in m.group(1).split("&&")]
            if None in conds:
                raise AssertionError(f"fake index cannot evaluate {line!r}")
            if all(_PAINLESS_OPS[c.group(1)](end, params[c.group(2)]) for c in conds):
                return int(m.group(2))
            continue
        m = _RETURN_LINE.fullmatch(line)
        if m:
            return int(m.group(1))
        raise AssertionError(f"fake index cannot evaluate {line!r}")
    raise AssertionError("sort script fell through without returning")


class _Indices:
    def __init__(self):
        self.created = {}

    def exists(self, index):
        return index in self.created

    def create(self, index, settings=None, mappings=None):
        self.created[index] = {"settings": settings, "mappings": mappings}

    def delete(self, index):
        self.created.pop(index, None)


class FakeIndex:
    """In-memory stand-in for the Elasticsearch client.

    Understands the query DSL subset this service emits, versions every
    document, and counts document writes so idempotence can be asserted.
    """

    def __init__(self):
        self.docs = {}
        self.versions = {}
        self.writes = 0
        self.indices = _Indices()
        self.fail = None
        self.fail_groups = set()
        # group -> callable run between selection and write, like a concurrent edit
        self.on_snapshot = {}

    def _check(self):
        if self.fail is not None:
            raise self.fail

    def _put(self, doc_id, source):
        self.docs[doc_id] = source
        self.versions[doc_id] = self.versions.get(doc_id, 0) + 1
        self.writes += 1

    def index(self, index, id, document, refresh=None):
        self._check()
        self._put(str(id), dict(document))
        return {"result": "created", "_id": str(id)}

    def delete(self, index, id, refresh=None):
        self._check()
        existed = self.docs.pop(str(id), None)
        self.versions.pop(str(id), None)
        return {"result": "deleted" if existed else "not_found"}

    def bulk(self, operations, refresh=None):
        self._check()
        items = []
        for action, source in zip(operations[::2], operations[1::2]):
            doc_id = action["index"]["_id"]
            self._put(doc_id, dict(source))
            items.append({"index": {"_id": doc_id, "status": 201}})
        return {"errors": False, "items": items}

    def update_by_query(self, index, query, script, conflicts="abort", refresh=None):
        self._check()
        params = script["params"]
        if params["group"] in self.fail_groups:
            raise ESConnectionError("connection reset during update_by_query")
        snapshot = [(i, self.versions[i]) for i, d in self.docs.items() if _matches(d, query)]
        hook = self.on_snapshot.pop(params["group"], None)
        if hook is not None:
            hook()
        updated = version_conflicts = 0
        for doc_id, version in snapshot:
            if self.versions.get(doc_id) != version:
                if conflicts != "proceed":
                    raise AssertionError("version conflict would abort the pass")
                version_conflicts += 1
                continue
            source = dict(self.docs[doc_id])
            source["sort_group"] = params["group"]
            try:
                source["sort_end"] = sort_key_for(source.get("end_date"))
            except MalformedInstantError:
                source["sort_end"] = params["sentinel"]
            if "updated_at" in source:
                source["updated_at"] = params["now"]
            self._put(doc_id, source)
            updated += 1
        return {
            "took": 1, "total": len(snapshot), "updated": updated,
            "version_conflicts": version_conflicts, "failures": [],
        }

    def delete_by_query(self, index, query, conflicts="abort", refresh=None):
        self._check()
        doomed = [i for i, d in self.docs.items() if _matches(d, query)]
        for doc_id in doomed:
            del self.docs[doc_id]
            self.versions.pop(doc_id, None)
        return {"deleted": len(doomed)}

    def _suggest(self, suggest):
        out = {}
        for name, spec in suggest.items():
            prefix = spec["prefix"].lower()
            completion = spec["completion"]
            found = []
            for doc in self.docs.values():
                entry = doc.get(completion["field"]) or {}
                for text in entry.get("input", []):
                    if text.lower().startswith(prefix) and text not in found:
                        found.append(text)
            found.sort(key=str.lower)
            options = [{"text": t} for t in found[:completion.get("size", 5)]]
            out[name] = [{"text": spec["prefix"], "options": options}]
        return {"suggest": out}

    def search(self, index, query=None, sort=(), from_=0, size=10, track_total_hits=True,
               suggest=None, source=None):
        self._check()
        if suggest is not None:
            return self._suggest(suggest)
        hits = [{"_id": i, "_source": dict(d)} for i, d in self.docs.items() if _matches(d, query)]
        for h in hits:
            h["sort"] = []
            for spec in sort:
                (field, opts), = spec.items()
                if field == "_script":
                    h["sort"].append(_script_group(h["_source"], opts["script"]))
                else:
                    h["sort"].append(_as_number(field, h["_source"].get(field)))
        for pos in reversed(range(len(sort))):
            (field, opts), = sort[pos].items()
            desc = opts.get("order") == "desc"
            present = [h for h in hits if h["sort"][pos] is not None]
            missing = [h for h in hits if h["sort"][pos] is None]
            present.sort(key=lambda h: h["sort"][pos], reverse=desc)
            hits = present + missing
        return {"hits": {"total": {"value": len(hits)}, "hits": hits[from_:from_ + size]}}


@pytest.fixture
def fake_index():
    return FakeIndex()


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add_all([User(id=1, user_type="INDIVIDUAL"), User(id=2, user_type="ORGANIZATION")])
    session.commit()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def tz():
    return KST


@pytest.fixture
def now():
    # 2026-10-18 14:00 KST
    return kst(2026, 10, 18, 14, 0, 0)


def days(n):
    return timedelta(days=n)
