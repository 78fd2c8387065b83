"""Website performance analysis orchestration and waterfall analytics."""

__version__ = "0.1.0"

from perfaudit.models import (
    AnalysisJob,
    JobStatus,
    QueueState,
    ResourceEntry,
    ResourceTiming,
    ResourceType,
    DeviceWaterfall,
    WaterfallAnalysis,
    Recommendation,
    Insight,
    ScoreSnapshot,
    CoreWebVitals,
    ComparisonRecord,
    ComparisonUnavailable,
    RunnerOutput,
    AnalysisReport,
)
from perfaudit.exceptions import (
    PerfAuditError,
    RateLimited,
    QueueTimeout,
    JobCanceled,
    AnalysisFailure,
    InvariantViolation,
)
from perfaudit.config import settings, OrchestratorConfig, WaterfallThresholds

from perfaudit.infrastructure import (
    AdmissionController,
    Admitted,
    Queued,
    Rejected,
)
from perfaudit.waterfall_analyzer import WaterfallAnalyzer
from perfaudit.comparison import ComparisonEngine
from perfaudit.history import (
    AbstractHistoryStore,
    InMemoryHistoryStore,
    SqliteHistoryStore,
)
from perfaudit.orchestrator import AnalysisOrchestrator

__all__ = [
    # Models
    "AnalysisJob",
    "JobStatus",
    "QueueState",
    "ResourceEntry",
    "ResourceTiming",
    "ResourceType",
    "DeviceWaterfall",
    "WaterfallAnalysis",
    "Recommendation",
    "Insight",
    "ScoreSnapshot",
    "CoreWebVitals",
    "ComparisonRecord",
    "ComparisonUnavailable",
    "RunnerOutput",
    "AnalysisReport",
    # Errors
    "PerfAuditError",
    "RateLimited",
    "QueueTimeout",
    "JobCanceled",
    "AnalysisFailure",
    "InvariantViolation",
    # Config
    "settings",
    "OrchestratorConfig",
    "WaterfallThresholds",
    # Core
    "AdmissionController",
    "Admitted",
    "Queued",
    "Rejected",
    "WaterfallAnalyzer",
    "ComparisonEngine",
    "AbstractHistoryStore",
    "InMemoryHistoryStore",
    "SqliteHistoryStore",
    "AnalysisOrchestrator",
]
