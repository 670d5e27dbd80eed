"""Data models for mirror jobs."""

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from sitemirror.constants import (
    CRAWL_STATE_VERSION,
    DEFAULT_ASSET_CONCURRENCY,
    DEFAULT_CERTIFY_THRESHOLD,
    DEFAULT_CONCURRENCY,
    DEFAULT_JOB_TIMEOUT_SECONDS,
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_PAGES,
    DEFAULT_TIMEOUT_PER_PAGE_SECONDS,
    MAX_ASSET_BYTES,
)


class JobStatus(str, Enum):
    """Lifecycle of a crawl job."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ChallengeKind(str, Enum):
    """Closed set of access states a navigated page can be classified into."""
    NONE = "none"
    SCRIPT_CHALLENGE = "script-challenge"
    CAPTCHA = "captcha"
    HARD_BLOCK = "hard-block"


class AccessState(str, Enum):
    """Per-page bypass state machine."""
    UNKNOWN = "unknown"
    CLASSIFIED = "classified"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class ErrorRecord:
    """A non-fatal failure kept on a page or job."""
    url: str
    error_type: str
    message: str
    phase: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "error_type": self.error_type,
            "message": self.message,
            "phase": self.phase,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorRecord":
        timestamp = datetime.now()
        if data.get("timestamp"):
            timestamp = datetime.fromisoformat(data["timestamp"])
        return cls(
            url=data.get("url", ""),
            error_type=data.get("error_type", "MirrorError"),
            message=data.get("message", ""),
            phase=data.get("phase", ""),
            timestamp=timestamp,
        )


@dataclass
class JobOptions:
    """Input options for a mirror job."""
    max_pages: int = DEFAULT_MAX_PAGES
    max_depth: int = DEFAULT_MAX_DEPTH
    concurrency: int = DEFAULT_CONCURRENCY
    timeout_per_page: float = DEFAULT_TIMEOUT_PER_PAGE_SECONDS
    job_timeout: float = DEFAULT_JOB_TIMEOUT_SECONDS
    proxy_enabled: bool = False
    proxy_strategy: str = "round_robin"
    challenge_solver_config: Dict[str, Any] = field(default_factory=dict)
    asset_concurrency: int = DEFAULT_ASSET_CONCURRENCY
    max_asset_bytes: int = MAX_ASSET_BYTES
    output_root: str = "mirrors/output"
    verify: bool = True
    verify_similarity: bool = False
    certify_threshold: float = DEFAULT_CERTIFY_THRESHOLD
    respect_robots: bool = True
    use_sitemap: bool = True

    def __post_init__(self):
        if self.max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        if self.max_depth < 0:
            raise ValueError("max_depth cannot be negative")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.timeout_per_page <= 0 or self.job_timeout <= 0:
            raise ValueError("timeouts must be positive")

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in self.__dataclass_fields__}
        # API keys never go into snapshots or manifests
        data["challenge_solver_config"] = sorted(self.challenge_solver_config)
        return data


@dataclass
class ChallengeAttempt:
    """One resolution attempt in a page's challenge audit trail."""
    page_url: str
    kind: ChallengeKind
    strategy_tried: str
    outcome: str  # resolved, failed, reclassified, error
    duration_ms: float
    detail: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_url": self.page_url,
            "kind": self.kind.value,
            "strategy_tried": self.strategy_tried,
            "outcome": self.outcome,
            "duration_ms": round(self.duration_ms, 1),
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PageRecord:
    """Capture record for one visited URL."""
    url: str
    depth: int
    http_status: Optional[int] = None
    final_url: Optional[str] = None
    challenge_type: ChallengeKind = ChallengeKind.NONE
    resolved_at: Optional[datetime] = None
    local_path: Optional[str] = None  # relative to the output root
    extracted_links: List[str] = field(default_factory=list)
    asset_refs: List[str] = field(default_factory=list)  # content hashes
    challenge_attempts: List[ChallengeAttempt] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    captured_at: Optional[datetime] = None
    verification: Dict[str, Any] = field(default_factory=dict)

    @property
    def captured(self) -> bool:
        return self.local_path is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "depth": self.depth,
            "http_status": self.http_status,
            "final_url": self.final_url,
            "challenge_type": self.challenge_type.value,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "local_path": self.local_path,
            "extracted_links": list(self.extracted_links),
            "asset_refs": list(self.asset_refs),
            "challenge_attempts": [a.to_dict() for a in self.challenge_attempts],
            "errors": [e.to_dict() for e in self.errors],
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "verification": dict(self.verification),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PageRecord":
        def _dt(value):
            return datetime.fromisoformat(value) if value else None

        attempts = [
            ChallengeAttempt(
                page_url=a["page_url"],
                kind=ChallengeKind(a["kind"]),
                strategy_tried=a["strategy_tried"],
                outcome=a["outcome"],
                duration_ms=a.get("duration_ms", 0.0),
                detail=a.get("detail"),
            )
            for a in data.get("challenge_attempts", [])
        ]
        return cls(
            url=data["url"],
            depth=data.get("depth", 0),
            http_status=data.get("http_status"),
            final_url=data.get("final_url"),
            challenge_type=ChallengeKind(data.get("challenge_type", "none")),
            resolved_at=_dt(data.get("resolved_at")),
            local_path=data.get("local_path"),
            extracted_links=data.get("extracted_links", []),
            asset_refs=data.get("asset_refs", []),
            challenge_attempts=attempts,
            errors=[ErrorRecord.from_dict(e) for e in data.get("errors", [])],
            captured_at=_dt(data.get("captured_at")),
            verification=data.get("verification", {}),
        )


@dataclass
class AssetRecord:
    """A content-addressed asset stored once per job."""
    source_url: str
    content_hash: str
    local_path: str  # relative to the output root
    mime_type: Optional[str] = None
    byte_size: int = 0
    referencing_pages: Set[str] = field(default_factory=set)
    alias_urls: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_url": self.source_url,
            "content_hash": self.content_hash,
            "local_path": self.local_path,
            "mime_type": self.mime_type,
            "byte_size": self.byte_size,
            "referencing_pages": sorted(self.referencing_pages),
            "alias_urls": sorted(self.alias_urls),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetRecord":
        return cls(
            source_url=data["source_url"],
            content_hash=data["content_hash"],
            local_path=data["local_path"],
            mime_type=data.get("mime_type"),
            byte_size=data.get("byte_size", 0),
            referencing_pages=set(data.get("referencing_pages", [])),
            alias_urls=set(data.get("alias_urls", [])),
        )


@dataclass
class ProgressEvent:
    """One state transition reported to progress consumers."""
    phase: str
    current_url: Optional[str] = None
    page_index: int = 0
    total_estimate: int = 0
    job_id: Optional[str] = None
    status: Optional[JobStatus] = None
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "current_url": self.current_url,
            "page_index": self.page_index,
            "total_estimate": self.total_estimate,
            "job_id": self.job_id,
            "status": self.status.value if self.status else None,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class FrontierEntry:
    url: str
    depth: int


@dataclass
class CrawlJob:
    """Mutable job state. Owned and mutated only by the orchestrator."""
    root_url: str
    options: JobOptions = field(default_factory=JobOptions)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    frontier: Deque[FrontierEntry] = field(default_factory=deque)
    visited: Set[str] = field(default_factory=set)
    status: JobStatus = JobStatus.PENDING
    pages: Dict[str, PageRecord] = field(default_factory=dict)
    errors: List[ErrorRecord] = field(default_factory=list)
    pages_failed: int = 0
    # In flight when the job stopped; requeued by the snapshot
    interrupted: List[FrontierEntry] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def pages_captured(self) -> int:
        return sum(1 for p in self.pages.values() if p.captured)

    def get_state(self) -> Dict[str, Any]:
        """Get the current job state for checkpointing/resume."""
        return {
            "version": CRAWL_STATE_VERSION,
            "job_id": self.id,
            "status": self.status.value,
            "config": {
                "root_url": self.root_url,
                "options": self.options.to_dict(),
            },
            "progress": {
                "pages_captured": self.pages_captured,
                "pages_failed": self.pages_failed,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "last_updated": datetime.now().isoformat(),
            },
            "visited_urls": sorted(self.visited - {e.url for e in self.interrupted}),
            "queue": [
                {"url": e.url, "depth": e.depth}
                for e in list(self.interrupted) + list(self.frontier)
            ],
            "pages": [p.to_dict() for p in self.pages.values()],
            "errors": [e.to_dict() for e in self.errors],
        }

    @classmethod
    def from_state(cls, state: Dict[str, Any], options: Optional[JobOptions] = None) -> "CrawlJob":
        job = cls(root_url=state["config"]["root_url"], options=options or JobOptions())
        job.restore_state(state)
        return job

    def restore_state(self, state: Dict[str, Any]) -> None:
        """Restore frontier, visited set, pages and errors from a snapshot."""
        self.id = state.get("job_id", self.id)
        self.visited = set(state.get("visited_urls", []))
        self.frontier = deque(
            FrontierEntry(item["url"], item["depth"]) for item in state.get("queue", [])
        )
        self.pages = {}
        for page_data in state.get("pages", []):
            record = PageRecord.from_dict(page_data)
            self.pages[record.url] = record
        self.errors = [ErrorRecord.from_dict(e) for e in state.get("errors", [])]
        self.pages_failed = state.get("progress", {}).get("pages_failed", 0)
        started = state.get("progress", {}).get("started_at")
        if started:
            self.started_at = datetime.fromisoformat(started)


@dataclass
class CrawlResult:
    """Final result of a mirror job."""
    success: bool
    status: JobStatus
    job_id: str
    pages_captured: int
    assets_captured: int
    errors: List[ErrorRecord] = field(default_factory=list)
    verification: Optional[Any] = None  # VerificationReport
    output_root: Optional[str] = None
    pages: List[PageRecord] = field(default_factory=list)
    assets: List[AssetRecord] = field(default_factory=list)
    headline: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "job_id": self.job_id,
            "pages_captured": self.pages_captured,
            "assets_captured": self.assets_captured,
            "errors": [e.to_dict() for e in self.errors],
            "verification": self.verification.to_dict() if self.verification else None,
            "output_root": self.output_root,
            "headline": self.headline,
        }
