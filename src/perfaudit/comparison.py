"""Comparison of successive analyses of the same URL."""

import logging
from typing import Dict, Optional, Union

from perfaudit.history import AbstractHistoryStore
from perfaudit.models import (
    CORE_WEB_VITALS,
    DEVICE_PROFILES,
    SCORE_CATEGORIES,
    AnalysisRecord,
    ComparisonRecord,
    ComparisonSummary,
    ComparisonUnavailable,
    CoreWebVitals,
    HistorySummary,
    MetricChange,
    ScoreChanges,
    ScoreSnapshot,
    Trend,
)

logger = logging.getLogger(__name__)

ComparisonResult = Union[ComparisonRecord, ComparisonUnavailable]


def metric_change(previous: Optional[float], current: Optional[float]) -> MetricChange:
    """Change between two readings. A missing side gives ``delta=None``, never 0."""
    if previous is None or current is None:
        return MetricChange(previous=previous, current=current, delta=None)
    return MetricChange(previous=previous, current=current, delta=current - previous)


def score_changes(previous: ScoreSnapshot, current: ScoreSnapshot) -> ScoreChanges:
    return ScoreChanges(**{
        name: getattr(current, name) - getattr(previous, name)
        for name in SCORE_CATEGORIES
    })


def vitals_changes(
    previous: ScoreSnapshot, current: ScoreSnapshot
) -> Dict[str, Dict[str, MetricChange]]:
    """Per device, per Core Web Vital change between two snapshots."""
    changes = {}
    for device in DEVICE_PROFILES:
        before: CoreWebVitals = getattr(previous, device) or CoreWebVitals()
        after: CoreWebVitals = getattr(current, device) or CoreWebVitals()
        changes[device] = {
            metric: metric_change(getattr(before, metric), getattr(after, metric))
            for metric in CORE_WEB_VITALS
        }
    return changes


def summarize(improvements: ScoreChanges) -> ComparisonSummary:
    """Count improved and regressed score categories and pick a trend.

    Equal counts (including both zero) mean unchanged.
    """
    deltas = improvements.values()
    total_improvements = sum(1 for d in deltas if d > 0)
    total_regressions = sum(1 for d in deltas if d < 0)

    if total_improvements > total_regressions:
        trend = Trend.IMPROVED
    elif total_regressions > total_improvements:
        trend = Trend.DECLINED
    else:
        trend = Trend.UNCHANGED

    return ComparisonSummary(
        total_improvements=total_improvements,
        total_regressions=total_regressions,
        overall_trend=trend,
    )


def compare_snapshots(
    url: str,
    previous: ScoreSnapshot,
    current: ScoreSnapshot,
    previous_record: Optional[AnalysisRecord] = None,
) -> ComparisonRecord:
    improvements = score_changes(previous, current)
    return ComparisonRecord(
        url=url,
        previous=previous,
        current=current,
        improvements=improvements,
        core_web_vitals_changes=vitals_changes(previous, current),
        summary=summarize(improvements),
        previous_analyzed_at=previous_record.analyzed_at if previous_record else None,
    )


class ComparisonEngine:
    """Relates a new analysis to the URL's previous stored analysis."""

    def __init__(self, store: AbstractHistoryStore):
        """
        Args:
            store: History store holding completed analyses
        """
        self.store = store

    def compare(self, url: str, current: ScoreSnapshot) -> ComparisonResult:
        """Compare ``current`` against the latest stored analysis of ``url``.

        Must be called before ``current`` itself is stored.

        Returns:
            ComparisonRecord, or ComparisonUnavailable for a first analysis
        """
        previous = self.store.get(url)
        if previous is None:
            logger.debug(f"No previous analysis for {url}")
            return ComparisonUnavailable(url=url)

        record = compare_snapshots(url, previous.scores, current, previous)
        logger.debug(
            f"Compared {url}: {record.summary.overall_trend.value} "
            f"(+{record.summary.total_improvements}/-{record.summary.total_regressions})"
        )
        return record

    def history_summary(self, url: str) -> HistorySummary:
        """Analysis count, last analysis time and rounded average scores."""
        history = self.store.history(url)
        if not history:
            return HistorySummary(
                url=url,
                has_history=False,
                total_analyses=0,
                last_analyzed=None,
                average_scores={name: 0 for name in SCORE_CATEGORIES},
            )

        average_scores = {
            name: round(sum(getattr(r.scores, name) for r in history) / len(history))
            for name in SCORE_CATEGORIES
        }
        return HistorySummary(
            url=url,
            has_history=True,
            total_analyses=len(history),
            last_analyzed=history[0].analyzed_at,
            average_scores=average_scores,
        )
