# src/sitemirror/constants.py
"""Centralized constants for the site mirror.

This module contains magic numbers and default values that are used
across multiple modules. For user-configurable values, see config.py.
"""

# =============================================================================
# Crawl Orchestrator Constants
# =============================================================================

# Default maximum pages to capture per job
DEFAULT_MAX_PAGES = 50

# Default maximum link depth (root page is depth 0)
DEFAULT_MAX_DEPTH = 3

# Default concurrent page tasks
DEFAULT_CONCURRENCY = 4

# Default per-page deadline in seconds (navigation + bypass + capture)
DEFAULT_TIMEOUT_PER_PAGE_SECONDS = 120.0

# Default wall-clock deadline for a whole job in seconds
DEFAULT_JOB_TIMEOUT_SECONDS = 3600.0

# Navigation retries for transient network errors
DEFAULT_NAVIGATION_RETRIES = 2

# Base for exponential backoff calculation
EXPONENTIAL_BACKOFF_BASE = 2

# Initial backoff delay in seconds
INITIAL_BACKOFF_DELAY_SECONDS = 1.0

# Maximum backoff delay in seconds (cap for exponential growth)
MAX_BACKOFF_DELAY_SECONDS = 30.0

# Crawl state snapshot format version
CRAWL_STATE_VERSION = 1

# Link extensions that are never treated as pages
NON_PAGE_EXTENSIONS = frozenset({
    '.pdf', '.jpg', '.jpeg', '.png', '.gif', '.svg', '.webp', '.avif', '.bmp',
    '.zip', '.tar', '.gz', '.rar', '.7z', '.mp4', '.mp3', '.avi', '.mov', '.webm',
    '.ogg', '.wav', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.css', '.js', '.mjs', '.xml', '.json', '.ico', '.woff', '.woff2', '.ttf',
    '.otf', '.eot',
})


# =============================================================================
# Discovery Constants (robots.txt and sitemaps)
# =============================================================================

# Product token matched against robots.txt User-agent groups
ROBOTS_USER_AGENT = "sitemirror"

# Sitemaps tried when robots.txt lists none
COMMON_SITEMAP_PATHS = ("/sitemap.xml", "/sitemap_index.xml")

# Nested sitemap index depth
SITEMAP_MAX_DEPTH = 3

# Request timeout for robots.txt and sitemap fetches in seconds
DISCOVERY_TIMEOUT_SECONDS = 15.0


# =============================================================================
# Browser Session Pool Constants
# =============================================================================

# Default browser sessions kept in the pool
DEFAULT_SESSION_POOL_SIZE = 4

# Uses before a session is retired
MAX_USES_PER_SESSION = 25

# Default navigation timeout in seconds
DEFAULT_NAVIGATION_TIMEOUT_SECONDS = 30.0

# Desktop viewport dimensions for browser sessions
DESKTOP_VIEWPORT_WIDTH = 1920
DESKTOP_VIEWPORT_HEIGHT = 1080

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)


# =============================================================================
# Protection-Bypass Constants
# =============================================================================

# Resolution attempts per challenge classification
MAX_CHALLENGE_ATTEMPTS = 3

# Backoff between resolution attempts (seconds, multiplied per attempt)
CHALLENGE_BACKOFF_BASE_SECONDS = 2.0
CHALLENGE_BACKOFF_MULTIPLIER = 2.0

# Active script-challenge polling
CHALLENGE_POLL_INTERVAL_SECONDS = 0.3
CHALLENGE_POLL_TIMEOUT_SECONDS = 12.0

# Passive wait used when script parameters cannot be extracted
CHALLENGE_PASSIVE_WAIT_SECONDS = 8.0

# How long a solved CAPTCHA token stays reusable
CAPTCHA_TOKEN_CACHE_SECONDS = 120.0


# =============================================================================
# Proxy Pool Constants
# =============================================================================

# Sliding window of recent outcomes per endpoint
PROXY_WINDOW_SIZE = 20

# Outcomes needed in the window before the failure rate is trusted
PROXY_MIN_SAMPLES = 5

# Failure rate above which an endpoint cools down
PROXY_FAILURE_RATE_THRESHOLD = 0.5

# Cooldown for the first offense, doubled per repeat offense, capped
PROXY_BASE_COOLDOWN_SECONDS = 30.0
PROXY_MAX_COOLDOWN_SECONDS = 900.0


# =============================================================================
# Asset Capture Constants
# =============================================================================

# Concurrent asset downloads per page
DEFAULT_ASSET_CONCURRENCY = 12

# Attempts per asset before it is recorded as a capture error
DEFAULT_ASSET_RETRIES = 3

# Bodies above this size are streamed to disk instead of buffered
STREAM_THRESHOLD_BYTES = 2 * 1024 * 1024  # 2MB

# Bodies above this size are skipped
MAX_ASSET_BYTES = 100 * 1024 * 1024  # 100MB

# Nested stylesheet @import depth
MAX_IMPORT_DEPTH = 3

# Per-asset request timeout in seconds
ASSET_REQUEST_TIMEOUT_SECONDS = 30.0

# Directory under the output root holding content-addressed assets
ASSETS_DIRNAME = "assets"

# Large downloads are spooled here before moving under assets/
STAGING_DIRNAME = ".staging"

MANIFEST_FILENAME = "manifest.json"


# =============================================================================
# Verification Constants
# =============================================================================

# Score needed for a job to be certified (policy constant, percent)
DEFAULT_CERTIFY_THRESHOLD = 95.0

# Pages sampled for structural similarity
SIMILARITY_SAMPLE_SIZE = 3

# Mean similarity ratio needed to pass the structural check
SIMILARITY_PASS_RATIO = 0.9

# Failing paths kept in check details
MAX_CHECK_DETAIL_SAMPLES = 20
