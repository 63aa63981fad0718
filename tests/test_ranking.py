# tests/test_ranking.py
from datetime import timedelta

import pytest
from elasticsearch import ConnectionError as ESConnectionError

from civicboard import ranking
from civicboard.lifecycle import LifecycleGroup, classify, day_window, to_es_date
from civicboard.ranking import (
    SearchFilters, SearchUnavailable, build_filter_query, build_imminent_request, build_search_request,
    group_script, imminent_listings, search_listings, suggest_titles,
)
from conftest import kst


def _doc(doc_id, end, created, now, tz, **extra):
    c = classify(end, now, tz)
    doc = {
        "id": doc_id, "user_id": 1, "title": f"listing {doc_id}", "content": "",
        "topics": ["climate"], "end_date": to_es_date(end), "created_at": to_es_date(created),
        "sort_group": int(c.group), "sort_end": c.sort_key,
    }
    doc.update(extra)
    return doc


@pytest.fixture
def seeded(fake_index, now, tz):
    # created times deliberately oppose the group order
    rows = [
        (1, kst(2026, 10, 18, 20, 0, 0), now - timedelta(days=30)),   # due today, oldest
        (2, kst(2026, 10, 25, 0, 0, 0), now - timedelta(days=10)),    # future
        (3, None, now - timedelta(days=5)),                           # perpetual
        (4, kst(2026, 10, 1, 0, 0, 0), now - timedelta(hours=1)),     # expired, newest
        (5, kst(2026, 10, 18, 23, 0, 0), now - timedelta(days=2)),    # due today
        (6, kst(2026, 11, 2, 0, 0, 0), now - timedelta(days=1)),      # future
    ]
    for doc_id, end, created in rows:
        fake_index.index(index="boards", id=doc_id, document=_doc(doc_id, end, created, now, tz))
    return fake_index


def _ids(page):
    return [h["id"] for h in page.hits]


def test_empty_filters_match_all():
    assert build_filter_query(SearchFilters()) == {"match_all": {}}


def test_filters_become_bool_clauses(now, tz):
    f = SearchFilters(q="  climate strike ", topics=["climate"], region="Seoul", district=["Jung-gu"],
                      participation_type=["RALLY"], host_type="ORGANIZATION", end_date=now)
    q = build_filter_query(f)["bool"]
    mm = q["must"][0]["multi_match"]
    assert mm["query"] == "climate strike"
    assert mm["fields"] == ["title^10", "title.partial^1", "content^3", "content.partial^0.5"]
    assert mm["operator"] == "and" and mm["minimum_should_match"] == "2<75%"
    assert {"terms": {"topics": ["climate"]}} in q["filter"]
    assert {"term": {"region": "Seoul"}} in q["filter"]
    assert {"terms": {"district": ["Jung-gu"]}} in q["filter"]
    assert {"range": {"end_date": {"lte": to_es_date(now)}}} in q["filter"]


def test_district_without_region_is_ignored():
    q = build_filter_query(SearchFilters(district=["Jung-gu"]))
    assert q == {"match_all": {}}


def test_stored_sort_is_group_then_recency(now, tz):
    req = build_search_request(SearchFilters(page=3, size=8), now, tz)
    assert list(req["sort"][0]) == ["sort_group"]
    assert req["sort"][1] == {"created_at": {"order": "desc"}}
    assert req["from_"] == 16 and req["size"] == 8


def test_inline_script_uses_the_shared_day_window(now, tz):
    w = day_window(now, tz)
    script = group_script(w)
    assert script["params"] == {
        "g3_lt": w.now_ms, "g0_gte": w.now_ms, "g0_lte": w.end_ms, "g1_gt": w.end_ms,
    }
    assert script["source"].splitlines() == [
        "if (doc['end_date'].size() == 0) return 2;",
        "long e = doc['end_date'].value.toInstant().toEpochMilli();",
        "if (e < params.g3_lt) return 3;",
        "if (e >= params.g0_gte && e <= params.g0_lte) return 0;",
        "if (e > params.g1_gt) return 1;",
        "return 2;",
    ]


def test_inline_path_runs_the_rendered_comparisons(seeded, now, tz, monkeypatch):
    stored = search_listings(seeded, "boards", SearchFilters(size=20), now, tz)
    monkeypatch.setattr(ranking, "_PAINLESS_OPS", {"lt": ">=", "lte": ">", "gt": "<=", "gte": "<"})
    inverted = search_listings(seeded, "boards", SearchFilters(size=20), now, tz, use_stored_group=False)
    assert _ids(inverted) != _ids(stored)


def test_ranking_puts_smaller_group_first_regardless_of_recency(seeded, now, tz):
    page = search_listings(seeded, "boards", SearchFilters(size=20), now, tz)
    assert _ids(page) == [5, 1, 6, 2, 3, 4]
    groups = [h["sort_group"] for h in page.hits]
    assert groups == sorted(groups)


def test_inline_path_agrees_with_stored_path(seeded, now, tz):
    stored = search_listings(seeded, "boards", SearchFilters(size=20), now, tz, use_stored_group=True)
    inline = search_listings(seeded, "boards", SearchFilters(size=20), now, tz, use_stored_group=False)
    assert _ids(stored) == _ids(inline)
    assert [h["sort_group"] for h in stored.hits] == [h["sort_group"] for h in inline.hits]


def test_inline_path_corrects_stale_stored_groups(seeded, now, tz):
    later = kst(2026, 10, 19, 0, 1, 0)  # after midnight, nothing reclassified yet
    page = search_listings(seeded, "boards", SearchFilters(size=20), later, tz, use_stored_group=False)
    assert _ids(page)[-3:] == [4, 5, 1]  # both former due-today listings are now expired
    assert page.hits[-1]["sort_group"] == LifecycleGroup.EXPIRED


@pytest.mark.parametrize("group", list(LifecycleGroup))
def test_group_filter_selects_same_documents_on_both_paths(seeded, now, tz, group):
    f = SearchFilters(group=group, size=20)
    stored = search_listings(seeded, "boards", f, now, tz, use_stored_group=True)
    inline = search_listings(seeded, "boards", f, now, tz, use_stored_group=False)
    assert stored.total == inline.total > 0
    assert set(_ids(stored)) == set(_ids(inline))


def test_keyword_and_paging(seeded, now, tz):
    page = search_listings(seeded, "boards", SearchFilters(q="listing", size=2, page=2), now, tz)
    assert page.total == 6
    assert _ids(page) == [6, 2]


def test_index_failure_raises_retryable_error(fake_index, now, tz):
    fake_index.fail = ESConnectionError("connection refused")
    with pytest.raises(SearchUnavailable):
        search_listings(fake_index, "boards", SearchFilters(), now, tz)


def test_imminent_request_sorts_on_end(now, tz):
    stored = build_imminent_request(now, tz)
    assert stored["query"]["bool"]["filter"] == [{"term": {"sort_group": 0}}]
    assert stored["sort"][0] == {"sort_end": {"order": "asc"}}
    inline = build_imminent_request(now, tz, use_stored_group=False)
    w = day_window(now, tz)
    assert {"range": {"end_date": {"gte": w.now_ms, "lte": w.end_ms, "format": "epoch_millis"}}} \
        in inline["query"]["bool"]["filter"]
    assert inline["sort"][0] == {"end_date": {"order": "asc"}}


@pytest.mark.parametrize("stored", [True, False])
def test_imminent_lists_due_today_soonest_first(seeded, now, tz, stored):
    page = imminent_listings(seeded, "boards", now, tz, use_stored_group=stored)
    assert _ids(page) == [1, 5]
    assert {h["sort_group"] for h in page.hits} == {LifecycleGroup.DUE_TODAY}


def test_imminent_inline_path_is_empty_after_midnight(seeded, tz):
    later = kst(2026, 10, 19, 0, 1, 0)
    assert _ids(imminent_listings(seeded, "boards", later, tz, use_stored_group=False)) == []
    # the stored path waits for the next reclassification tick
    assert _ids(imminent_listings(seeded, "boards", later, tz)) == [1, 5]


def test_suggestions_complete_a_prefix(fake_index):
    fake_index.index(index="boards", id=1, document={
        "id": 1, "suggest": {"input": ["climate", "march", "climate march", "labor"], "weight": 10},
    })
    fake_index.index(index="boards", id=2, document={
        "id": 2, "suggest": {"input": ["Climb", "climate"], "weight": 10},
    })
    assert suggest_titles(fake_index, "boards", "cli") == ["climate", "climate march", "Climb"]
    assert suggest_titles(fake_index, "boards", "lab") == ["labor"]


def test_blank_prefix_does_not_query(fake_index):
    fake_index.fail = ESConnectionError("must not be called")
    assert suggest_titles(fake_index, "boards", "  ") == []
    assert suggest_titles(fake_index, "boards", None) == []
    with pytest.raises(SearchUnavailable):
        suggest_titles(fake_index, "boards", "cl")
