"""Site mirror: capture websites into self-contained offline copies."""

__version__ = "0.1.0"

from sitemirror.orchestrator import CrawlOrchestrator
from sitemirror.verification import Verifier, VerificationReport, CheckResult
from sitemirror.job_store import JsonJobStore
from sitemirror.models import (
    AccessState,
    AssetRecord,
    ChallengeAttempt,
    ChallengeKind,
    CrawlJob,
    CrawlResult,
    ErrorRecord,
    JobOptions,
    JobStatus,
    PageRecord,
    ProgressEvent,
)
from sitemirror.exceptions import (
    ChallengeUnsolved,
    InvariantViolation,
    JobCancelled,
    JobTimeout,
    MirrorError,
    NetworkError,
    ResourceTooLarge,
    RobotsDisallowed,
    UnsupportedResource,
)
from sitemirror.config import MirrorConfig, settings

from sitemirror.infrastructure import (
    BrowserSessionPool,
    PlaywrightLauncher,
    ProxyPool,
    RotationStrategy,
)

__all__ = [
    # Core
    "CrawlOrchestrator",
    "Verifier",
    "VerificationReport",
    "CheckResult",
    "JsonJobStore",
    # Models
    "AccessState",
    "AssetRecord",
    "ChallengeAttempt",
    "ChallengeKind",
    "CrawlJob",
    "CrawlResult",
    "ErrorRecord",
    "JobOptions",
    "JobStatus",
    "PageRecord",
    "ProgressEvent",
    # Errors
    "ChallengeUnsolved",
    "InvariantViolation",
    "JobCancelled",
    "JobTimeout",
    "MirrorError",
    "NetworkError",
    "ResourceTooLarge",
    "RobotsDisallowed",
    "UnsupportedResource",
    # Configuration
    "MirrorConfig",
    "settings",
    # Infrastructure
    "BrowserSessionPool",
    "PlaywrightLauncher",
    "ProxyPool",
    "RotationStrategy",
]
