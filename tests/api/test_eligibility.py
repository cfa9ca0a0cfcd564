"""Tests for eligibility classification of requested items."""
from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_item

from bulk_engine.api.jobs.eligibility import EligibilityClassifier, is_recently_processed, partition

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(hours=24)


def _src(item_id, **kwargs):
    hours = kwargs.pop("hours_ago", None)
    src = make_item(item_id, **kwargs)
    if hours is not None:
        src.last_processed_at = NOW - timedelta(hours=hours)
    return src


def test_freshness_boundary_is_exclusive():
    assert is_recently_processed(NOW - timedelta(hours=23, minutes=59), NOW, DAY) is True
    assert is_recently_processed(NOW - DAY, NOW, DAY) is False
    assert is_recently_processed(None, NOW, DAY) is False


def test_partition_buckets():
    sources = {
        "p": _src("p"),
        "s": _src("s", primary=None, secondary="https://profile"),
        "fresh": _src("fresh", hours_ago=2),
        "old": _src("old", hours_ago=48),
        "none": _src("none", primary=None),
        "busy": _src("busy", in_flight=True, hours_ago=1),
    }
    result = partition(["p", "s", "fresh", "old", "none", "busy", "ghost"], sources, now=NOW, window=DAY)
    assert result.eligible == ["p", "old"]
    assert result.secondary_eligible == ["s"]
    assert result.already_processed == ["fresh"]
    assert result.no_sources == ["none"]
    assert result.in_flight == ["busy"]
    assert result.not_found == ["ghost"]


def test_processable_preserves_request_order():
    sources = {i: _src(i, primary=None, secondary="x") if i == "b" else _src(i) for i in "cab"}
    result = partition(["c", "a", "b"], sources, now=NOW, window=DAY)
    assert result.processable() == ["c", "a", "b"]


def test_force_refresh_includes_fresh_items_with_sources():
    sources = {
        "fresh": _src("fresh", hours_ago=1),
        "fresh_gone": _src("fresh_gone", primary=None, hours_ago=1),
        "busy": _src("busy", in_flight=True),
    }
    result = partition(["fresh", "fresh_gone", "busy"], sources, now=NOW, window=DAY)
    assert result.processable() == []
    assert result.processable(force_refresh=True) == ["fresh"]
    assert result.already_processed == ["fresh", "fresh_gone"]


def test_summary_counts():
    sources = {
        "a": _src("a"),
        "b": _src("b", hours_ago=1),
        "c": _src("c", primary=None),
        "d": _src("d", primary=None, secondary="x"),
    }
    summary = partition(["a", "b", "c", "d"], sources, now=NOW, window=DAY).summary()
    assert summary == {
        "total_requested": 4,
        "eligible": 2,
        "ineligible": 2,
        "already_processing": 0,
        "already_processed": 1,
        "no_sources": 1,
        "not_found": 0,
        "primary_eligible": 1,
        "secondary_only": 1,
    }


def test_all_without_sources_has_no_eligible():
    sources = {i: _src(i, primary=None) for i in "abc"}
    summary = partition(list("abc"), sources, now=NOW, window=DAY).summary()
    assert summary["eligible"] == 0
    assert summary["no_sources"] == 3


@pytest.mark.asyncio
async def test_classifier_reads_lookup_scoped_to_owner(lookup, seed):
    await seed(make_item("mine"), make_item("theirs", owner_id="owner-2"))
    classifier = EligibilityClassifier(lookup)
    result = await classifier.classify(["mine", "theirs"], "owner-1")
    assert result.eligible == ["mine"]
    assert result.not_found == ["theirs"]


@pytest.mark.asyncio
async def test_classifier_window_follows_runtime_config(lookup, seed, monkeypatch):
    import bulk_engine.config as cfg

    await seed(make_item("a", processed_hours_ago=5))
    classifier = EligibilityClassifier(lookup)
    assert (await classifier.classify(["a"], "owner-1")).already_processed == ["a"]

    monkeypatch.setattr(cfg, "FRESHNESS_WINDOW_HOURS", 1)
    assert (await classifier.classify(["a"], "owner-1")).eligible == ["a"]
