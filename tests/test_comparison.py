# tests/test_comparison.py
from datetime import datetime, timedelta

import pytest

from perfaudit.comparison import (
    ComparisonEngine,
    compare_snapshots,
    metric_change,
    summarize,
)
from perfaudit.history import InMemoryHistoryStore
from perfaudit.models import (
    AnalysisRecord,
    ComparisonRecord,
    ComparisonUnavailable,
    CoreWebVitals,
    ScoreChanges,
    ScoreSnapshot,
    Trend,
)

URL = "https://example.com/"


def snapshot(performance=70, accessibility=90, best_practices=80, seo=85, **kwargs):
    return ScoreSnapshot(
        performance=performance,
        accessibility=accessibility,
        best_practices=best_practices,
        seo=seo,
        **kwargs,
    )


@pytest.fixture
def store():
    return InMemoryHistoryStore()


@pytest.fixture
def engine(store):
    return ComparisonEngine(store)


def test_first_analysis_has_no_comparison(engine):
    result = engine.compare(URL, snapshot())

    assert isinstance(result, ComparisonUnavailable)
    assert result.url == URL


def test_performance_improvement(engine, store):
    store.put(URL, AnalysisRecord(url=URL, scores=snapshot(performance=70),
                                  analyzed_at=datetime(2024, 1, 1)))

    result = engine.compare(URL, snapshot(performance=85))

    assert isinstance(result, ComparisonRecord)
    assert result.improvements.performance == 15
    assert result.summary.total_improvements >= 1
    assert result.summary.overall_trend == Trend.IMPROVED
    assert result.previous_analyzed_at == datetime(2024, 1, 1)


def test_compares_against_latest_record(engine, store):
    store.put(URL, AnalysisRecord(url=URL, scores=snapshot(performance=50),
                                  analyzed_at=datetime(2024, 1, 1)))
    store.put(URL, AnalysisRecord(url=URL, scores=snapshot(performance=90),
                                  analyzed_at=datetime(2024, 1, 2)))

    result = engine.compare(URL, snapshot(performance=80))

    assert result.improvements.performance == -10
    assert result.summary.overall_trend == Trend.DECLINED


def test_identical_snapshots_unchanged():
    record = compare_snapshots(URL, snapshot(), snapshot())

    assert record.improvements == ScoreChanges()
    assert record.summary.total_improvements == 0
    assert record.summary.total_regressions == 0
    assert record.summary.overall_trend == Trend.UNCHANGED


def test_equal_improvements_and_regressions_unchanged():
    summary = summarize(ScoreChanges(performance=5, accessibility=-3))

    assert summary.total_improvements == 1
    assert summary.total_regressions == 1
    assert summary.overall_trend == Trend.UNCHANGED


def test_vitals_do_not_affect_trend():
    previous = snapshot(mobile=CoreWebVitals(lcp=2000, cls=0.1))
    current = snapshot(mobile=CoreWebVitals(lcp=4000, cls=0.3))

    record = compare_snapshots(URL, previous, current)

    assert record.core_web_vitals_changes["mobile"]["lcp"].delta == 2000
    assert record.summary.overall_trend == Trend.UNCHANGED


def test_missing_vitals_give_none_delta():
    previous = snapshot(mobile=CoreWebVitals(lcp=2500))
    current = snapshot(mobile=CoreWebVitals(lcp=None, fid=0), desktop=CoreWebVitals(lcp=1200))

    changes = compare_snapshots(URL, previous, current).core_web_vitals_changes

    assert changes["mobile"]["lcp"].delta is None
    assert changes["mobile"]["lcp"].previous == 2500
    assert changes["mobile"]["fid"].delta is None
    assert changes["desktop"]["lcp"].delta is None
    assert changes["desktop"]["lcp"].current == 1200


def test_zero_is_a_real_value():
    change = metric_change(0, 0.05)
    assert change.delta == pytest.approx(0.05)
    assert metric_change(0.1, 0).delta == pytest.approx(-0.1)


class TestHistorySummary:

    def test_no_history(self, engine):
        summary = engine.history_summary(URL)

        assert summary.has_history is False
        assert summary.total_analyses == 0
        assert summary.last_analyzed is None

    def test_averages_are_rounded(self, engine, store):
        base = datetime(2024, 3, 1)
        for day, performance in enumerate((70, 75, 81)):
            store.put(URL, AnalysisRecord(url=URL, scores=snapshot(performance=performance),
                                          analyzed_at=base + timedelta(days=day)))

        summary = engine.history_summary(URL)

        assert summary.has_history is True
        assert summary.total_analyses == 3
        assert summary.last_analyzed == base + timedelta(days=2)
        assert summary.average_scores["performance"] == 75
        assert summary.average_scores["seo"] == 85
