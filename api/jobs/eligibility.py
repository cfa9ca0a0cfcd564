"""Eligibility classification of candidate work items.

Splits a requested id list into the buckets that decide what a new job will
actually process.  Precedence, first match wins:

    in_flight -> already_processed -> no_sources -> secondary_eligible -> eligible

Ids the lookup does not know for this owner land in ``not_found``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from ... import config as _cfg
from .sources import DataSourceLookup, ItemSources


@dataclass
class Eligibility:
    """Five-way partition of a request (plus unknown ids), each in request order."""

    requested: List[str] = field(default_factory=list)
    eligible: List[str] = field(default_factory=list)
    secondary_eligible: List[str] = field(default_factory=list)
    already_processed: List[str] = field(default_factory=list)
    no_sources: List[str] = field(default_factory=list)
    in_flight: List[str] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    # already_processed ids that still have a source; only these come back
    # under force_refresh.
    refreshable: List[str] = field(default_factory=list)

    def processable(self, force_refresh: bool = False) -> List[str]:
        """Ids a job should process, in the caller's original order."""
        chosen = set(self.eligible) | set(self.secondary_eligible)
        if force_refresh:
            chosen |= set(self.refreshable)
        return [i for i in self.requested if i in chosen]

    def summary(self, force_refresh: bool = False) -> Dict[str, int]:
        scheduled = len(self.processable(force_refresh))
        return {
            "total_requested": len(self.requested),
            "eligible": scheduled,
            "ineligible": len(self.requested) - scheduled,
            "already_processing": len(self.in_flight),
            "already_processed": len(self.already_processed),
            "no_sources": len(self.no_sources),
            "not_found": len(self.not_found),
            "primary_eligible": len(self.eligible),
            "secondary_only": len(self.secondary_eligible),
        }


def is_recently_processed(
    last_processed_at: Optional[datetime],
    now: datetime,
    window: timedelta,
) -> bool:
    """True when ``now - last_processed_at < window``; a missing timestamp is stale."""
    if last_processed_at is None:
        return False
    return now - last_processed_at < window


def partition(
    item_ids: Sequence[str],
    sources: Mapping[str, ItemSources],
    *,
    now: Optional[datetime] = None,
    window: Optional[timedelta] = None,
) -> Eligibility:
    """Classify *item_ids* against already-fetched source facts.  No I/O."""
    now = now or datetime.now(timezone.utc)
    window = window if window is not None else timedelta(hours=_cfg.FRESHNESS_WINDOW_HOURS)
    result = Eligibility(requested=list(dict.fromkeys(item_ids)))

    for item_id in result.requested:
        src = sources.get(item_id)
        if src is None:
            result.not_found.append(item_id)
        elif src.in_flight:
            result.in_flight.append(item_id)
        elif is_recently_processed(src.last_processed_at, now, window):
            result.already_processed.append(item_id)
            if src.has_any_source:
                result.refreshable.append(item_id)
        elif not src.has_any_source:
            result.no_sources.append(item_id)
        elif not src.has_primary:
            result.secondary_eligible.append(item_id)
        else:
            result.eligible.append(item_id)
    return result


class EligibilityClassifier:
    """Reads current item facts from a lookup and partitions them."""

    def __init__(self, lookup: DataSourceLookup, window: Optional[timedelta] = None) -> None:
        self.lookup = lookup
        self._window = window

    @property
    def window(self) -> timedelta:
        if self._window is not None:
            return self._window
        return timedelta(hours=_cfg.FRESHNESS_WINDOW_HOURS)

    async def classify(
        self,
        item_ids: Sequence[str],
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> Eligibility:
        sources = await self.lookup.get_sources(item_ids, owner_id)
        return partition(item_ids, sources, now=now, window=self.window)
