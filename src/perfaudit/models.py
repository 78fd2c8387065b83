"""Data models for analysis jobs, resource timelines and comparisons."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple


# ============================================================================
# Enumerations
# ============================================================================

class JobStatus(str, Enum):
    """Lifecycle state of an analysis job."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED)


class ResourceType(str, Enum):
    """Resource classification reported by the browser runner."""
    DOCUMENT = "document"
    STYLESHEET = "stylesheet"
    SCRIPT = "script"
    IMAGE = "image"
    FONT = "font"
    FETCH = "fetch"
    XHR = "xhr"
    OTHER = "other"


class RecommendationType(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class Impact(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class InsightImpact(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class Trend(str, Enum):
    IMPROVED = "improved"
    DECLINED = "declined"
    UNCHANGED = "unchanged"


DEVICE_PROFILES = ("mobile", "desktop")


# ============================================================================
# Analysis Job Models
# ============================================================================

@dataclass
class AnalysisJob:
    """A single analysis request tracked by the admission controller."""
    id: str
    url: str
    requested_at: float
    status: JobStatus = JobStatus.QUEUED
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    failure_reason: Optional[str] = None

    @property
    def wait_time(self) -> Optional[float]:
        """Seconds spent queued before admission."""
        if self.started_at is None:
            return None
        return self.started_at - self.requested_at


@dataclass
class QueueState:
    """Read-only snapshot of the admission controller."""
    active_analyses: int
    queue_length: int
    max_concurrent: int
    rate_limit_seconds: float
    last_admitted_at: Dict[str, float] = field(default_factory=dict)

    @property
    def available_slots(self) -> int:
        return self.max_concurrent - self.active_analyses


# ============================================================================
# Resource Timeline Models
# ============================================================================

@dataclass(frozen=True)
class ResourceTiming:
    """Network phase breakdown for a single request (milliseconds)."""
    dns_lookup: float = 0.0
    connecting: float = 0.0
    tls_handshake: float = 0.0
    waiting: float = 0.0  # TTFB
    receiving: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceTiming":
        return cls(
            dns_lookup=float(data.get("dnsLookup", data.get("dns_lookup", 0.0))),
            connecting=float(data.get("connecting", 0.0)),
            tls_handshake=float(data.get("tlsHandshake", data.get("tls_handshake", 0.0))),
            waiting=float(data.get("waiting", 0.0)),
            receiving=float(data.get("receiving", 0.0)),
        )


@dataclass(frozen=True)
class ResourceEntry:
    """One resource loaded during navigation, as reported by the runner.

    Times are milliseconds relative to navigation start. Sizes are bytes:
    ``size`` uncompressed, ``transfer_size`` over the wire.
    """
    url: str
    type: ResourceType
    start_time: float
    end_time: float
    size: int = 0
    transfer_size: int = 0
    status: int = 200
    cached: bool = False
    is_render_blocking: bool = False
    is_critical: bool = False
    mime_type: Optional[str] = None
    protocol: Optional[str] = None
    priority: Optional[str] = None
    initiator: Optional[str] = None
    timing: Optional[ResourceTiming] = None

    def __post_init__(self):
        if not isinstance(self.type, ResourceType):
            object.__setattr__(self, "type", ResourceType(self.type))
        if self.end_time < self.start_time:
            raise ValueError(
                f"Resource {self.url} ends before it starts "
                f"({self.end_time} < {self.start_time})"
            )
        if self.size < 0 or self.transfer_size < 0:
            raise ValueError(f"Resource {self.url} has a negative size")

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceEntry":
        """Build an entry from the runner's camelCase JSON payload."""
        timing = data.get("timing")
        return cls(
            url=data["url"],
            type=ResourceType(data.get("type", "other")),
            start_time=float(data.get("startTime", data.get("start_time", 0.0))),
            end_time=float(data.get("endTime", data.get("end_time", 0.0))),
            size=int(data.get("size", 0)),
            transfer_size=int(data.get("transferSize", data.get("transfer_size", 0))),
            status=int(data.get("status", 200)),
            cached=bool(data.get("cached", False)),
            is_render_blocking=bool(
                data.get("isRenderBlocking", data.get("is_render_blocking", False))
            ),
            is_critical=bool(data.get("isCritical", data.get("is_critical", False))),
            mime_type=data.get("mimeType", data.get("mime_type")),
            protocol=data.get("protocol"),
            priority=data.get("priority"),
            initiator=data.get("initiator"),
            timing=ResourceTiming.from_dict(timing) if timing else None,
        )


@dataclass(frozen=True)
class WaterfallBar:
    """Rendering geometry for one resource row, in percent of the timeline."""
    url: str
    offset_percent: float
    width_percent: float
    performance_label: str


@dataclass
class DeviceWaterfall:
    """Aggregates for one device profile. Built fresh on every analysis."""
    device: str
    resources: List[ResourceEntry] = field(default_factory=list)
    total_resources: int = 0
    total_size: int = 0
    total_transfer_size: int = 0
    total_duration: float = 0.0
    render_blocking_resources: int = 0
    critical_resources: int = 0
    parallel_requests: int = 0
    cache_hit_rate: float = 0.0  # percentage
    compression_savings: float = 0.0  # percentage
    total_blocking_time: Optional[float] = None
    first_contentful_paint: Optional[float] = None
    bars: List[WaterfallBar] = field(default_factory=list)


# ============================================================================
# Recommendation Models
# ============================================================================

@dataclass(frozen=True)
class Recommendation:
    """Base recommendation. Concrete categories add their own evidence fields."""
    category: ClassVar[str] = "generic"

    type: RecommendationType
    impact: Impact
    title: str
    description: str
    how_to_fix: str
    potential_savings: str
    devices: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category
        return data


@dataclass(frozen=True)
class RenderBlockingRecommendation(Recommendation):
    category: ClassVar[str] = "render_blocking"

    blocking_count: int = 0
    resources_affected: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CachingRecommendation(Recommendation):
    category: ClassVar[str] = "caching"

    cache_hit_rate: float = 0.0
    uncached_resources: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MultiplexingRecommendation(Recommendation):
    category: ClassVar[str] = "http2_multiplexing"

    parallel_requests: int = 0
    protocols: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CompressionRecommendation(Recommendation):
    category: ClassVar[str] = "compression"

    compression_savings: float = 0.0
    uncompressed_bytes: int = 0


@dataclass(frozen=True)
class LargeResourceRecommendation(Recommendation):
    category: ClassVar[str] = "large_resources"

    resources_affected: Tuple[str, ...] = ()
    largest_bytes: int = 0


@dataclass(frozen=True)
class SlowResourceRecommendation(Recommendation):
    category: ClassVar[str] = "slow_resources"

    resources_affected: Tuple[str, ...] = ()
    slowest_ms: float = 0.0


@dataclass(frozen=True)
class FailedRequestRecommendation(Recommendation):
    category: ClassVar[str] = "failed_requests"

    failed_requests: Tuple[Tuple[str, int], ...] = ()


@dataclass(frozen=True)
class Insight:
    """A single derived fact about the page load."""
    metric: str
    value: str
    impact: InsightImpact
    description: str
    device: Optional[str] = None


@dataclass
class WaterfallAnalysis:
    """Waterfall results for the analyzed device profiles.

    A device that was not analyzed (or whose run failed) is ``None``.
    """
    mobile: Optional[DeviceWaterfall] = None
    desktop: Optional[DeviceWaterfall] = None
    recommendations: List[Recommendation] = field(default_factory=list)
    insights: List[Insight] = field(default_factory=list)

    def devices(self) -> List[DeviceWaterfall]:
        return [w for w in (self.mobile, self.desktop) if w is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mobile": asdict(self.mobile) if self.mobile else None,
            "desktop": asdict(self.desktop) if self.desktop else None,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "insights": [asdict(i) for i in self.insights],
        }


# ============================================================================
# Score / Comparison Models
# ============================================================================

CORE_WEB_VITALS = ("lcp", "fid", "cls", "ttfb")
SCORE_CATEGORIES = ("performance", "accessibility", "best_practices", "seo")


@dataclass(frozen=True)
class CoreWebVitals:
    """Core Web Vitals for one device; any metric may be missing."""
    lcp: Optional[float] = None
    fid: Optional[float] = None
    cls: Optional[float] = None
    ttfb: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CoreWebVitals":
        data = data or {}
        return cls(**{m: data.get(m) for m in CORE_WEB_VITALS})


@dataclass(frozen=True)
class ScoreSnapshot:
    """Category scores (0-100) and Core Web Vitals of one analysis."""
    performance: float = 0
    accessibility: float = 0
    best_practices: float = 0
    seo: float = 0
    mobile: Optional[CoreWebVitals] = None
    desktop: Optional[CoreWebVitals] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoreSnapshot":
        vitals = data.get("core_web_vitals") or data.get("coreWebVitals") or data
        mobile = vitals.get("mobile")
        desktop = vitals.get("desktop")
        return cls(
            performance=data.get("performance", data.get("performanceScore", 0)),
            accessibility=data.get("accessibility", data.get("accessibilityScore", 0)),
            best_practices=data.get(
                "best_practices",
                data.get("bestPractices", data.get("bestPracticesScore", 0)),
            ),
            seo=data.get("seo", data.get("seoScore", 0)),
            mobile=CoreWebVitals.from_dict(mobile) if mobile is not None else None,
            desktop=CoreWebVitals.from_dict(desktop) if desktop is not None else None,
        )


@dataclass
class AnalysisRecord:
    """A completed analysis as kept in the history store."""
    url: str
    scores: ScoreSnapshot
    analyzed_at: datetime
    job_id: Optional[str] = None


@dataclass(frozen=True)
class ScoreChanges:
    performance: float = 0
    accessibility: float = 0
    best_practices: float = 0
    seo: float = 0

    def values(self) -> List[float]:
        return [getattr(self, name) for name in SCORE_CATEGORIES]


@dataclass(frozen=True)
class MetricChange:
    """Change of a single metric; ``delta`` is None when either side is missing."""
    previous: Optional[float]
    current: Optional[float]
    delta: Optional[float]


@dataclass(frozen=True)
class ComparisonSummary:
    total_improvements: int
    total_regressions: int
    overall_trend: Trend


@dataclass
class ComparisonRecord:
    """Relation between an analysis and the URL's previous one."""
    url: str
    previous: ScoreSnapshot
    current: ScoreSnapshot
    improvements: ScoreChanges
    core_web_vitals_changes: Dict[str, Dict[str, MetricChange]]
    summary: ComparisonSummary
    previous_analyzed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ComparisonUnavailable:
    """No prior analysis exists for the URL (first analysis)."""
    url: str
    reason: str = "no previous analysis"


@dataclass
class HistorySummary:
    """Aggregate view of the stored history for one URL."""
    url: str
    has_history: bool
    total_analyses: int
    last_analyzed: Optional[datetime]
    average_scores: Dict[str, int] = field(default_factory=dict)


# ============================================================================
# Pipeline Models
# ============================================================================

@dataclass
class RunnerOutput:
    """What the external browser runner hands back for one job."""
    resources: Dict[str, List[ResourceEntry]]
    scores: ScoreSnapshot
    device_metrics: Dict[str, Dict[str, Optional[float]]] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class AnalysisReport:
    """Finished report handed to the presentation/storage layer."""
    job: AnalysisJob
    scores: ScoreSnapshot
    waterfall: WaterfallAnalysis
    comparison: Any  # ComparisonRecord | ComparisonUnavailable
    device_errors: Dict[str, str] = field(default_factory=dict)
