# src/perfaudit/constants.py
"""Centralized constants for the analysis pipeline.

This module contains magic numbers and configuration defaults that are used
across multiple modules. For user-configurable thresholds, see config.py
and WaterfallThresholds.
"""

# =============================================================================
# Admission / Queue Constants
# =============================================================================

# Seconds a URL must wait after admission before it can be analyzed again
DEFAULT_RATE_LIMIT_SECONDS = 30

# Maximum analyses running at the same time
DEFAULT_MAX_CONCURRENT_ANALYSES = 20

# Interval for the housekeeping sweep (seconds)
DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60

# Admission stamps older than this multiple of the rate limit are pruned
RATE_LIMIT_RETENTION_FACTOR = 2

# Analyses kept per URL in the history store
MAX_HISTORY_PER_URL = 10


# =============================================================================
# Waterfall Recommendation Thresholds
# =============================================================================

# More render-blocking resources than this is critical
RENDER_BLOCKING_THRESHOLD = 3

# Cache hit rate (percent) below which caching headers are recommended
LOW_CACHE_HIT_RATE_PERCENT = 30.0

# Browsers open at most this many connections per origin over HTTP/1.1
HTTP1_CONNECTION_LIMIT = 6

# Compression savings (percent) below which compression is recommended
LOW_COMPRESSION_SAVINGS_PERCENT = 20.0

# Single resource size that warrants optimization (bytes)
LARGE_RESOURCE_BYTES = 500 * 1024

# Single resource duration considered slow (milliseconds)
SLOW_RESOURCE_MS = 1000.0

# Total transfer weight considered heavy (bytes)
HEAVY_PAGE_BYTES = 2 * 1024 * 1024

# Time to first byte thresholds (milliseconds)
TTFB_GOOD_MS = 800.0
TTFB_POOR_MS = 1800.0

# Typical ratio of transferred bytes saved by gzip/brotli on text assets
ESTIMATED_COMPRESSION_RATIO = 0.7

# Maximum resource URLs listed in a recommendation
MAX_AFFECTED_RESOURCES = 10


# =============================================================================
# Waterfall Bar Labels
# =============================================================================

# Upper bound (ms, inclusive) for each performance band; above the last is "very slow"
PERFORMANCE_BANDS = (
    (100.0, "excellent"),
    (300.0, "good"),
    (500.0, "acceptable"),
    (1000.0, "slow"),
)
VERY_SLOW_LABEL = "very slow"


# =============================================================================
# Comparison Constants
# =============================================================================

# Score categories compared between analyses (report order)
SCORE_CATEGORY_LABELS = {
    "performance": "Performance",
    "accessibility": "Accessibility",
    "best_practices": "Best Practices",
    "seo": "SEO",
}
