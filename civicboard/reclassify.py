# civicboard/reclassify.py
"""Batch reclassification of the stored lifecycle fields.

Time moves listings between groups (due today becomes expired at midnight,
future becomes due today) without any write touching them. `Reclassifier`
runs one update-by-query pass per group, selecting documents whose group
recomputed from `end_date` differs from their stored `sort_group`. Passes
are independent: each derives its selection from `end_date`, never from
another pass's output, and the `must_not` on the stored value makes a
repeated run a no-op.
"""
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Dict, List, Optional

from elasticsearch import ApiError, TransportError

from .lifecycle import (
    DayWindow, LifecycleGroup, SORT_END_SENTINEL, day_window, to_es_date, to_instant, to_millis, utcnow,
)
from .ranking import group_predicate
from .utils import logger

# update_by_query sees only _source, so sort_end is derived from the raw
# end_date as it is at write time, never from a value captured at selection.
RECLASSIFY_SCRIPT = """
ctx._source.sort_group = params.group;
if (ctx._source.containsKey('end_date') && ctx._source.end_date != null) {
  def v = ctx._source.end_date;
  if (v instanceof Number) {
    ctx._source.sort_end = ((Number) v).longValue();
  } else if (v instanceof String) {
    String s = ((String) v).replace(' ', 'T');
    if (!s.endsWith('Z') && s.indexOf('+', 10) < 0 && s.lastIndexOf('-') < 10) {
      s = s + 'Z';
    }
    try {
      ctx._source.sort_end = java.time.OffsetDateTime.parse(s).toInstant().toEpochMilli();
    } catch (Exception ex) {
      ctx._source.sort_end = params.sentinel;
    }
  } else {
    ctx._source.sort_end = params.sentinel;
  }
} else {
  ctx._source.sort_end = params.sentinel;
}
if (ctx._source.containsKey('updated_at')) {
  ctx._source.updated_at = params.now;
}
"""

# perpetual first: its predicate does not depend on the clock
PASS_ORDER = (
    LifecycleGroup.PERPETUAL,
    LifecycleGroup.EXPIRED,
    LifecycleGroup.DUE_TODAY,
    LifecycleGroup.FUTURE,
)


@dataclass
class PassResult:
    group: LifecycleGroup
    updated: int = 0
    total: int = 0
    version_conflicts: int = 0
    took_ms: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def selection_query(group: LifecycleGroup, window: DayWindow) -> Dict:
    pred = group_predicate(group, window)
    return {
        "bool": {
            "filter": pred["filter"],
            "must_not": pred["must_not"] + [{"term": {"sort_group": int(group)}}],
        }
    }


def build_script(group: LifecycleGroup, window: DayWindow) -> Dict:
    return {
        "lang": "painless",
        "source": RECLASSIFY_SCRIPT,
        "params": {
            "group": int(group),
            "sentinel": SORT_END_SENTINEL,
            "now": to_es_date(window.now_ms),
        },
    }


class Reclassifier:
    """Keeps `sort_group`/`sort_end` in the index consistent with the clock.

    `run_once` is safe to call from a scheduler, an admin endpoint or a
    one-shot script. Overlapping calls on the same instance are skipped;
    duplicate runs elsewhere only cost redundant work.
    """

    def __init__(self, client, index: str, tz: tzinfo, refresh: bool = False):
        self.client = client
        self.index = index
        self.tz = tz
        self.refresh = refresh
        self._lock = threading.Lock()

    def run_once(self, now: Optional[datetime] = None) -> List[PassResult]:
        if not self._lock.acquire(blocking=False):
            logger.info("Reclassification of %s already running, skipping", self.index)
            return []
        try:
            # DayBoundaryError propagates: a wrong day would corrupt the boundary
            window = day_window(now if now is not None else utcnow(), self.tz)
            logger.info(
                "[range] now=%s day=%s..%s (%s)",
                to_es_date(window.now_ms), to_es_date(window.start_ms), to_es_date(window.end_ms), self.tz,
            )
            results = [self._run_pass(group, window) for group in PASS_ORDER]
            logger.info(
                "[done] reclassify updated=%d failed_passes=%d",
                sum(r.updated for r in results), sum(1 for r in results if not r.ok),
            )
            return results
        finally:
            self._lock.release()

    def _run_pass(self, group: LifecycleGroup, window: DayWindow) -> PassResult:
        result = PassResult(group=group)
        try:
            resp = self.client.update_by_query(
                index=self.index,
                query=selection_query(group, window),
                script=build_script(group, window),
                conflicts="proceed",
                refresh=self.refresh,
            )
        except (ApiError, TransportError) as e:
            logger.error("[%s(%d)] error: %s", group.name, group, e)
            result.error = str(e)
            return result
        result.updated = resp.get("updated", 0)
        result.total = resp.get("total", 0)
        result.version_conflicts = resp.get("version_conflicts", 0)
        result.took_ms = resp.get("took", 0)
        for failure in resp.get("failures") or []:
            logger.warning("[%s(%d)] document failure: %s", group.name, group, failure)
        logger.info(
            "[%s(%d)] updated=%d total=%d conflicts=%d took=%dms",
            group.name, group, result.updated, result.total, result.version_conflicts, result.took_ms,
        )
        return result


def purge_expired(client, index: str, now: datetime, tz: tzinfo, retention_days: int) -> int:
    """Delete listings that ended more than `retention_days` reference days ago."""
    window = day_window(now, tz)
    cutoff = to_instant(window.start_ms) - timedelta(days=retention_days)
    try:
        resp = client.delete_by_query(
            index=index,
            query={"range": {"end_date": {"lt": to_millis(cutoff), "format": "epoch_millis"}}},
            conflicts="proceed",
            refresh=True,
        )
    except (ApiError, TransportError) as e:
        logger.error("Purge of expired listings in %s failed: %s", index, e)
        return 0
    deleted = resp.get("deleted", 0)
    logger.info("Purged %d listings that ended before %s", deleted, to_es_date(cutoff))
    return deleted
