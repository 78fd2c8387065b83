import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from perfaudit import constants
from perfaudit.models import DEVICE_PROFILES

load_dotenv()

logger = logging.getLogger(__name__)


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


class Settings:
    """
    Manages application settings loaded from environment variables.
    """
    MAX_CONCURRENT = int(os.getenv(
        "PERFAUDIT_MAX_CONCURRENT", str(constants.DEFAULT_MAX_CONCURRENT_ANALYSES)
    ))
    RATE_LIMIT_SECONDS = float(os.getenv(
        "PERFAUDIT_RATE_LIMIT_SECONDS", str(constants.DEFAULT_RATE_LIMIT_SECONDS)
    ))
    MAX_QUEUE_WAIT_SECONDS = _optional_float(os.getenv("PERFAUDIT_MAX_QUEUE_WAIT_SECONDS"))

    # History backend configuration
    HISTORY_BACKEND = os.getenv("PERFAUDIT_HISTORY_BACKEND", "memory")  # 'memory' or 'sqlite'
    HISTORY_DB = os.getenv("PERFAUDIT_HISTORY_DB", "sqlite:///perfaudit_history.db")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


class OrchestratorConfig(BaseModel):
    """
    Configuration for the analysis orchestrator and its admission controller.

    All fields are validated by Pydantic to ensure type safety and valid values.
    """

    model_config = ConfigDict(validate_assignment=True)

    max_concurrent: int = Field(
        default=constants.DEFAULT_MAX_CONCURRENT_ANALYSES,
        description="Maximum analyses running at once",
        ge=1,
    )

    rate_limit_seconds: float = Field(
        default=constants.DEFAULT_RATE_LIMIT_SECONDS,
        description="Per-URL cooldown, measured from admission time",
        ge=0,
    )

    max_queue_wait_seconds: Optional[float] = Field(
        default=None,
        description="Queued jobs older than this fail with QueueTimeout. None disables the timeout.",
        gt=0,
    )

    cleanup_interval_seconds: float = Field(
        default=constants.DEFAULT_CLEANUP_INTERVAL_SECONDS,
        description="Interval of the housekeeping sweep",
        gt=0,
    )

    rate_limit_retention_factor: float = Field(
        default=constants.RATE_LIMIT_RETENTION_FACTOR,
        description="Admission stamps older than factor x rate limit are pruned",
        ge=1,
    )

    max_history_per_url: int = Field(
        default=constants.MAX_HISTORY_PER_URL,
        description="Analyses kept per URL in the in-memory history store",
        ge=1,
    )

    device_profiles: Tuple[str, ...] = Field(
        default=DEVICE_PROFILES,
        description="Device profiles requested from the runner",
    )

    @field_validator("device_profiles")
    @classmethod
    def _known_devices(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        unknown = [d for d in value if d not in DEVICE_PROFILES]
        if unknown:
            raise ValueError(f"Unknown device profiles: {unknown}")
        if not value:
            raise ValueError("At least one device profile is required")
        return value

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load configuration from environment variables.

        Returns:
            OrchestratorConfig: Configuration instance with values from environment
        """
        return cls(
            max_concurrent=settings.MAX_CONCURRENT,
            rate_limit_seconds=settings.RATE_LIMIT_SECONDS,
            max_queue_wait_seconds=settings.MAX_QUEUE_WAIT_SECONDS,
        )


@dataclass
class WaterfallThresholds:
    """Configurable thresholds for waterfall recommendations and insights."""

    # Recommendation rules
    render_blocking_max: int = constants.RENDER_BLOCKING_THRESHOLD
    cache_hit_rate_min: float = constants.LOW_CACHE_HIT_RATE_PERCENT
    connection_limit: int = constants.HTTP1_CONNECTION_LIMIT
    compression_savings_min: float = constants.LOW_COMPRESSION_SAVINGS_PERCENT
    large_resource_bytes: int = constants.LARGE_RESOURCE_BYTES
    slow_resource_ms: float = constants.SLOW_RESOURCE_MS
    heavy_page_bytes: int = constants.HEAVY_PAGE_BYTES

    # Insights
    ttfb_good_ms: float = constants.TTFB_GOOD_MS
    ttfb_poor_ms: float = constants.TTFB_POOR_MS

    # Reporting
    max_affected_resources: int = constants.MAX_AFFECTED_RESOURCES

    @classmethod
    def from_env(cls, prefix: str = "PERFAUDIT_THRESHOLD_") -> "WaterfallThresholds":
        """Build thresholds from ``<prefix><FIELD>`` environment variables.

        e.g. PERFAUDIT_THRESHOLD_SLOW_RESOURCE_MS=1500. Unparseable values
        are logged and the default is kept.
        """
        overrides = {}
        for f in fields(cls):
            raw = os.getenv(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            try:
                overrides[f.name] = _THRESHOLD_TYPES[f.name](raw)
            except ValueError:
                logger.warning(f"Ignoring {prefix}{f.name.upper()}={raw!r}: not a number")
        return cls(**overrides)

    @classmethod
    def from_file(cls, path: str) -> "WaterfallThresholds":
        """Build thresholds from a JSON file.

        The file holds either the threshold fields at top level or under a
        ``thresholds`` key, as written by ``save_to_file``. A missing file
        gives the defaults.
        """
        file_path = Path(path)
        if not file_path.exists():
            logger.debug(f"No thresholds file at {path}; using defaults")
            return cls()

        data = json.loads(file_path.read_text())
        data = data.get("thresholds", data)
        return cls(**{
            name: _THRESHOLD_TYPES[name](value)
            for name, value in data.items()
            if name in _THRESHOLD_TYPES
        })

    def to_dict(self) -> dict:
        return asdict(self)

    def save_to_file(self, path: str) -> None:
        Path(path).write_text(json.dumps({"thresholds": self.to_dict()}, indent=2))


_THRESHOLD_TYPES = {f.name: f.type for f in fields(WaterfallThresholds)}

default_thresholds = WaterfallThresholds()
