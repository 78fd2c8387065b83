"""Resource waterfall analyzer for page load timelines.

Turns the resource-timing records captured for one device profile into
aggregate metrics, per-resource bar geometry, rule-based recommendations
and single-metric insights. Everything here is a pure function of its
input: no clock, no randomness, no I/O.
"""

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from perfaudit.config import WaterfallThresholds, default_thresholds
from perfaudit.constants import (
    ESTIMATED_COMPRESSION_RATIO,
    PERFORMANCE_BANDS,
    VERY_SLOW_LABEL,
)
from perfaudit.models import (
    DEVICE_PROFILES,
    CachingRecommendation,
    CompressionRecommendation,
    DeviceWaterfall,
    FailedRequestRecommendation,
    Impact,
    Insight,
    InsightImpact,
    LargeResourceRecommendation,
    MultiplexingRecommendation,
    Recommendation,
    RecommendationType,
    RenderBlockingRecommendation,
    ResourceEntry,
    ResourceType,
    SlowResourceRecommendation,
    WaterfallAnalysis,
    WaterfallBar,
)

logger = logging.getLogger(__name__)

# Sweep-line event order at equal timestamps. Intervals are half-open
# [start, end): a resource ending at t is no longer in flight when another
# starts at t. Zero-length resources occupy their single instant, so their
# end sorts after every start at that time.
_END = 0
_START = 1
_INSTANT_END = 2

# Resource types whose payload is text and benefits from gzip/brotli
TEXT_RESOURCE_TYPES = frozenset({
    ResourceType.DOCUMENT,
    ResourceType.STYLESHEET,
    ResourceType.SCRIPT,
    ResourceType.FETCH,
    ResourceType.XHR,
})

MULTIPLEXED_PROTOCOLS = frozenset({"h2", "h3", "http/2", "http/3", "http/2.0", "http/3.0"})

_SEVERITY_ORDER = {
    RecommendationType.CRITICAL: 0,
    RecommendationType.WARNING: 1,
    RecommendationType.INFO: 2,
}


# ============================================================================
# Pure helpers
# ============================================================================

def peak_concurrency(resources: Iterable[ResourceEntry]) -> int:
    """Maximum number of resources in flight at the same instant."""
    events: List[Tuple[float, int, int]] = []
    for resource in resources:
        events.append((resource.start_time, _START, 1))
        if resource.end_time > resource.start_time:
            events.append((resource.end_time, _END, -1))
        else:
            events.append((resource.end_time, _INSTANT_END, -1))

    events.sort()
    in_flight = 0
    peak = 0
    for _, _, delta in events:
        in_flight += delta
        if in_flight > peak:
            peak = in_flight
    return peak


def clamp_percentage(value: float) -> float:
    return max(0.0, min(100.0, value))


def bar_geometry(resource: ResourceEntry, total_duration: float) -> Tuple[float, float]:
    """(offset %, width %) of a resource bar on a 0..total_duration timeline."""
    if total_duration <= 0:
        return 0.0, 0.0
    offset = clamp_percentage(resource.start_time / total_duration * 100)
    width = clamp_percentage(resource.duration / total_duration * 100)
    return round(offset, 2), round(width, 2)


def performance_label(duration_ms: float) -> str:
    for upper_bound, label in PERFORMANCE_BANDS:
        if duration_ms <= upper_bound:
            return label
    return VERY_SLOW_LABEL


def format_bytes(num_bytes: float) -> str:
    """Human readable byte count, e.g. ``1.5 KB``."""
    if num_bytes <= 0:
        return "0 B"
    size = float(num_bytes)
    units = ("B", "KB", "MB", "GB")
    for unit in units:
        if size < 1024 or unit == units[-1]:
            return f"{round(size, 1):g} {unit}"
        size /= 1024
    return f"{num_bytes} B"


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{ms:.0f}ms"
    return f"{ms / 1000:.1f}s"


# ============================================================================
# Analyzer
# ============================================================================

class WaterfallAnalyzer:
    """Analyzes resource loading timelines and identifies optimization opportunities."""

    def __init__(self, thresholds: Optional[WaterfallThresholds] = None):
        """Initialize analyzer with configurable thresholds.

        Args:
            thresholds: Waterfall thresholds configuration
        """
        self.thresholds = thresholds or default_thresholds

    def analyze(
        self,
        resources: Sequence[ResourceEntry],
        device: str = "mobile",
        total_blocking_time: Optional[float] = None,
        first_contentful_paint: Optional[float] = None,
    ) -> DeviceWaterfall:
        """Compute the aggregate waterfall for one device profile.

        Args:
            resources: Resource timing records, in capture order
            device: Device profile the records belong to
            total_blocking_time: Measured TBT (ms), passed through
            first_contentful_paint: Measured FCP (ms), passed through

        Returns:
            DeviceWaterfall with every derived field computed from scratch
        """
        resources = list(resources)
        total_resources = len(resources)
        total_size = sum(r.size for r in resources)
        total_transfer_size = sum(r.transfer_size for r in resources)
        total_duration = max((r.end_time for r in resources), default=0.0)

        cache_hit_rate = 0.0
        if total_resources:
            cached = sum(1 for r in resources if r.cached)
            cache_hit_rate = clamp_percentage(100.0 * cached / total_resources)

        compression_savings = 0.0
        if total_size > 0:
            compression_savings = clamp_percentage(
                100.0 * (total_size - total_transfer_size) / total_size
            )

        bars = []
        for resource in resources:
            offset, width = bar_geometry(resource, total_duration)
            bars.append(WaterfallBar(
                url=resource.url,
                offset_percent=offset,
                width_percent=width,
                performance_label=performance_label(resource.duration),
            ))

        return DeviceWaterfall(
            device=device,
            resources=resources,
            total_resources=total_resources,
            total_size=total_size,
            total_transfer_size=total_transfer_size,
            total_duration=total_duration,
            render_blocking_resources=sum(1 for r in resources if r.is_render_blocking),
            critical_resources=sum(1 for r in resources if r.is_critical),
            parallel_requests=peak_concurrency(resources),
            cache_hit_rate=round(cache_hit_rate, 2),
            compression_savings=round(compression_savings, 2),
            total_blocking_time=total_blocking_time,
            first_contentful_paint=first_contentful_paint,
            bars=bars,
        )

    def analyze_devices(
        self,
        resources_by_device: Dict[str, Sequence[ResourceEntry]],
        device_metrics: Optional[Dict[str, Dict[str, Optional[float]]]] = None,
    ) -> WaterfallAnalysis:
        """Analyze every captured device profile and build the full report.

        Devices missing from ``resources_by_device`` are left absent.
        """
        device_metrics = device_metrics or {}
        waterfalls = {}
        for device in DEVICE_PROFILES:
            if device not in resources_by_device:
                continue
            metrics = device_metrics.get(device, {})
            waterfalls[device] = self.analyze(
                resources_by_device[device],
                device=device,
                total_blocking_time=metrics.get("total_blocking_time"),
                first_contentful_paint=metrics.get("first_contentful_paint"),
            )
        return self.build_analysis(waterfalls)

    def build_analysis(self, waterfalls: Dict[str, DeviceWaterfall]) -> WaterfallAnalysis:
        """Attach recommendations and insights to per-device waterfalls."""
        analysis = WaterfallAnalysis(
            mobile=waterfalls.get("mobile"),
            desktop=waterfalls.get("desktop"),
        )

        merged: Dict[str, Recommendation] = {}
        for waterfall in analysis.devices():
            for rec in self.generate_recommendations(waterfall):
                existing = merged.get(rec.category)
                if existing is None:
                    merged[rec.category] = rec
                else:
                    merged[rec.category] = replace(
                        existing, devices=existing.devices + rec.devices
                    )
            analysis.insights.extend(self.generate_insights(waterfall))

        analysis.recommendations = sorted(
            merged.values(), key=lambda r: _SEVERITY_ORDER[r.type]
        )
        return analysis

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def generate_recommendations(self, waterfall: DeviceWaterfall) -> List[Recommendation]:
        """Rule-based recommendations for one device waterfall."""
        if waterfall.total_resources == 0:
            return []

        rules = (
            self._check_failed_requests,
            self._check_render_blocking,
            self._check_caching,
            self._check_compression,
            self._check_large_resources,
            self._check_slow_resources,
            self._check_multiplexing,
        )
        recommendations = []
        for rule in rules:
            rec = rule(waterfall)
            if rec is not None:
                recommendations.append(rec)
        return recommendations

    def _top_urls(self, resources: Iterable[ResourceEntry]) -> Tuple[str, ...]:
        return tuple(r.url for r in resources)[: self.thresholds.max_affected_resources]

    def _check_render_blocking(self, waterfall: DeviceWaterfall) -> Optional[Recommendation]:
        if waterfall.render_blocking_resources <= self.thresholds.render_blocking_max:
            return None

        blocking = [r for r in waterfall.resources if r.is_render_blocking]
        blocked_until = max(r.end_time for r in blocking)
        return RenderBlockingRecommendation(
            type=RecommendationType.CRITICAL,
            impact=Impact.HIGH,
            title="Eliminate render-blocking resources",
            description=(
                f"{len(blocking)} stylesheets and scripts block the first paint "
                f"until {format_duration(blocked_until)} after navigation."
            ),
            how_to_fix=(
                "Inline critical CSS, load the remaining stylesheets asynchronously "
                "and add defer or async to scripts that are not needed for first render."
            ),
            potential_savings=f"Up to {format_duration(blocked_until)} faster first paint",
            devices=(waterfall.device,),
            blocking_count=len(blocking),
            resources_affected=self._top_urls(blocking),
        )

    def _check_caching(self, waterfall: DeviceWaterfall) -> Optional[Recommendation]:
        if waterfall.cache_hit_rate >= self.thresholds.cache_hit_rate_min:
            return None

        uncached = sorted(
            (r for r in waterfall.resources if not r.cached),
            key=lambda r: (-r.transfer_size, r.url),
        )
        repeat_bytes = sum(r.transfer_size for r in uncached)
        return CachingRecommendation(
            type=RecommendationType.WARNING,
            impact=Impact.MEDIUM,
            title="Set cache headers for static resources",
            description=(
                f"Only {waterfall.cache_hit_rate:.0f}% of resources were served from cache."
            ),
            how_to_fix=(
                "Serve static assets with long Cache-Control max-age values and "
                "fingerprinted file names so repeat visits skip the network."
            ),
            potential_savings=f"{format_bytes(repeat_bytes)} on repeat visits",
            devices=(waterfall.device,),
            cache_hit_rate=waterfall.cache_hit_rate,
            uncached_resources=self._top_urls(uncached),
        )

    def _check_multiplexing(self, waterfall: DeviceWaterfall) -> Optional[Recommendation]:
        if waterfall.parallel_requests < self.thresholds.connection_limit:
            return None

        protocols = sorted({(r.protocol or "").lower() for r in waterfall.resources} - {""})
        if protocols and all(p in MULTIPLEXED_PROTOCOLS for p in protocols):
            return None

        return MultiplexingRecommendation(
            type=RecommendationType.INFO,
            impact=Impact.LOW,
            title="Consider HTTP/2 multiplexing",
            description=(
                f"Up to {waterfall.parallel_requests} requests were in flight at once, "
                f"reaching the per-origin connection limit of HTTP/1.1."
            ),
            how_to_fix=(
                "Enable HTTP/2 or HTTP/3 on the server or CDN so requests share a "
                "single connection instead of queueing for a free one."
            ),
            potential_savings="Less connection queueing on resource-heavy pages",
            devices=(waterfall.device,),
            parallel_requests=waterfall.parallel_requests,
            protocols=tuple(protocols),
        )

    def _check_compression(self, waterfall: DeviceWaterfall) -> Optional[Recommendation]:
        if waterfall.total_size == 0:
            return None
        if waterfall.compression_savings >= self.thresholds.compression_savings_min:
            return None

        text_bytes = sum(
            r.transfer_size for r in waterfall.resources if r.type in TEXT_RESOURCE_TYPES
        )
        estimated = int(text_bytes * ESTIMATED_COMPRESSION_RATIO)
        return CompressionRecommendation(
            type=RecommendationType.WARNING,
            impact=Impact.MEDIUM,
            title="Enable text compression",
            description=(
                f"Transferred bytes are only {waterfall.compression_savings:.0f}% smaller "
                f"than the uncompressed resources."
            ),
            how_to_fix=(
                "Enable gzip or brotli for HTML, CSS, JavaScript and JSON responses "
                "on the origin server or CDN."
            ),
            potential_savings=f"About {format_bytes(estimated)} less transferred",
            devices=(waterfall.device,),
            compression_savings=waterfall.compression_savings,
            uncompressed_bytes=waterfall.total_size,
        )

    def _check_large_resources(self, waterfall: DeviceWaterfall) -> Optional[Recommendation]:
        large = sorted(
            (r for r in waterfall.resources if r.size > self.thresholds.large_resource_bytes),
            key=lambda r: (-r.size, r.url),
        )
        if not large:
            return None

        heavy_page = waterfall.total_transfer_size > self.thresholds.heavy_page_bytes
        excess = sum(r.size - self.thresholds.large_resource_bytes for r in large)
        return LargeResourceRecommendation(
            type=RecommendationType.WARNING,
            impact=Impact.HIGH if heavy_page else Impact.MEDIUM,
            title="Reduce the size of large resources",
            description=(
                f"{len(large)} resources exceed "
                f"{format_bytes(self.thresholds.large_resource_bytes)}; the largest is "
                f"{format_bytes(large[0].size)}."
            ),
            how_to_fix=(
                "Serve images in modern formats at their rendered size and split or "
                "tree-shake large JavaScript bundles."
            ),
            potential_savings=f"Up to {format_bytes(excess)}",
            devices=(waterfall.device,),
            resources_affected=self._top_urls(large),
            largest_bytes=large[0].size,
        )

    def _check_slow_resources(self, waterfall: DeviceWaterfall) -> Optional[Recommendation]:
        slow = sorted(
            (r for r in waterfall.resources if r.duration > self.thresholds.slow_resource_ms),
            key=lambda r: (-r.duration, r.url),
        )
        if not slow:
            return None

        return SlowResourceRecommendation(
            type=RecommendationType.WARNING,
            impact=Impact.MEDIUM,
            title="Speed up slow resources",
            description=(
                f"{len(slow)} resources took longer than "
                f"{format_duration(self.thresholds.slow_resource_ms)} to load; the slowest "
                f"took {format_duration(slow[0].duration)}."
            ),
            how_to_fix=(
                "Serve these resources from a CDN close to users, preconnect to their "
                "origins and check for slow backend responses."
            ),
            potential_savings=(
                f"Up to {format_duration(slow[0].duration - self.thresholds.slow_resource_ms)}"
            ),
            devices=(waterfall.device,),
            resources_affected=self._top_urls(slow),
            slowest_ms=slow[0].duration,
        )

    def _check_failed_requests(self, waterfall: DeviceWaterfall) -> Optional[Recommendation]:
        failed = [r for r in waterfall.resources if r.status >= 400]
        if not failed:
            return None

        document_failed = any(r.type is ResourceType.DOCUMENT for r in failed)
        return FailedRequestRecommendation(
            type=RecommendationType.CRITICAL if document_failed else RecommendationType.WARNING,
            impact=Impact.HIGH if document_failed else Impact.MEDIUM,
            title="Fix failing requests",
            description=f"{len(failed)} requests returned an HTTP error status.",
            how_to_fix=(
                "Remove references to missing resources or fix the endpoints that "
                "return errors."
            ),
            potential_savings=f"{len(failed)} wasted requests",
            devices=(waterfall.device,),
            failed_requests=tuple(
                (r.url, r.status) for r in failed
            )[: self.thresholds.max_affected_resources],
        )

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    def generate_insights(self, waterfall: DeviceWaterfall) -> List[Insight]:
        """Single-metric facts about one device waterfall.

        Time to First Byte is taken from the main document's ``timing.waiting``
        phase. Without that breakdown the insight is omitted: the document's
        start/end window covers the whole download, not the server wait.
        """
        if waterfall.total_resources == 0:
            return []

        device = waterfall.device
        insights = []

        ttfb = self._document_ttfb(waterfall.resources)
        if ttfb is not None:
            if ttfb <= self.thresholds.ttfb_good_ms:
                impact = InsightImpact.POSITIVE
            elif ttfb > self.thresholds.ttfb_poor_ms:
                impact = InsightImpact.NEGATIVE
            else:
                impact = InsightImpact.NEUTRAL
            insights.append(Insight(
                metric="Time to First Byte",
                value=format_duration(ttfb),
                impact=impact,
                description="Server response time for the main document.",
                device=device,
            ))

        largest = max(waterfall.resources, key=lambda r: (r.size, r.url))
        insights.append(Insight(
            metric="Largest Resource",
            value=format_bytes(largest.size),
            impact=(
                InsightImpact.NEGATIVE
                if largest.size > self.thresholds.large_resource_bytes
                else InsightImpact.NEUTRAL
            ),
            description=f"{largest.url} ({largest.type.value})",
            device=device,
        ))

        slowest = max(waterfall.resources, key=lambda r: (r.duration, r.url))
        insights.append(Insight(
            metric="Slowest Resource",
            value=format_duration(slowest.duration),
            impact=(
                InsightImpact.NEGATIVE
                if slowest.duration > self.thresholds.slow_resource_ms
                else InsightImpact.POSITIVE
            ),
            description=f"{slowest.url} ({slowest.type.value})",
            device=device,
        ))

        insights.append(Insight(
            metric="Page Weight",
            value=format_bytes(waterfall.total_transfer_size),
            impact=(
                InsightImpact.NEGATIVE
                if waterfall.total_transfer_size > self.thresholds.heavy_page_bytes
                else InsightImpact.POSITIVE
            ),
            description=(
                f"{waterfall.total_resources} resources, "
                f"{format_bytes(waterfall.total_size)} uncompressed."
            ),
            device=device,
        ))

        insights.append(Insight(
            metric="Cache Hit Rate",
            value=f"{waterfall.cache_hit_rate:.0f}%",
            impact=(
                InsightImpact.POSITIVE
                if waterfall.cache_hit_rate >= self.thresholds.cache_hit_rate_min
                else InsightImpact.NEGATIVE
            ),
            description="Share of resources served from the browser cache.",
            device=device,
        ))

        if waterfall.render_blocking_resources == 0:
            blocking_impact = InsightImpact.POSITIVE
        elif waterfall.render_blocking_resources > self.thresholds.render_blocking_max:
            blocking_impact = InsightImpact.NEGATIVE
        else:
            blocking_impact = InsightImpact.NEUTRAL
        insights.append(Insight(
            metric="Render-Blocking Resources",
            value=str(waterfall.render_blocking_resources),
            impact=blocking_impact,
            description="Resources that delay the first paint.",
            device=device,
        ))

        insights.append(Insight(
            metric="Peak Parallel Requests",
            value=str(waterfall.parallel_requests),
            impact=InsightImpact.NEUTRAL,
            description=f"Total load time {format_duration(waterfall.total_duration)}.",
            device=device,
        ))
        return insights

    @staticmethod
    def _document_ttfb(resources: Sequence[ResourceEntry]) -> Optional[float]:
        for resource in resources:
            if resource.type is ResourceType.DOCUMENT and resource.timing is not None:
                return resource.timing.waiting
        return None
