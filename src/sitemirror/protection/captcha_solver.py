"""
CAPTCHA solver integration.

Solving is delegated to external services behind one narrow interface:
``solve(kind, site_key, page_url) -> token | None``. Providers are tried in
priority order by CaptchaSolverChain; a provider failure is logged and the
next provider is tried.

Usage:
    chain = build_solver_chain({"2captcha": {"api_key": "...", "priority": 0}})
    token = await chain.solve("recaptcha_v2", site_key, page_url)
"""
import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from sitemirror.constants import CAPTCHA_TOKEN_CACHE_SECONDS

logger = logging.getLogger(__name__)


class CaptchaType(Enum):
    """Types of CAPTCHAs we can handle."""
    RECAPTCHA_V2 = "recaptcha_v2"
    RECAPTCHA_V3 = "recaptcha_v3"
    HCAPTCHA = "hcaptcha"
    TURNSTILE = "turnstile"  # Cloudflare


class SolverStatus(Enum):
    """Status of a solve request."""
    PENDING = "pending"
    PROCESSING = "processing"
    SOLVED = "solved"
    FAILED = "failed"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


@dataclass
class SolveResult:
    """Result from a CAPTCHA solve attempt."""
    status: SolverStatus
    captcha_type: CaptchaType
    solution: Optional[str] = None  # The token/response to submit
    task_id: Optional[str] = None
    solve_time_seconds: float = 0.0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "status": self.status.value,
            "captcha_type": self.captcha_type.value,
            "task_id": self.task_id,
            "solve_time_seconds": self.solve_time_seconds,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseCaptchaSolver(ABC):
    """
    Abstract base class for CAPTCHA solvers.

    Implement this class to integrate with different solving services.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: float = 120,
        poll_interval: float = 5.0,
    ):
        """
        Initialize solver.

        Args:
            api_key: API key for the solving service
            timeout_seconds: Maximum time to wait for solution
            poll_interval: Seconds between status checks
        """
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval

        # Statistics
        self._total_requests = 0
        self._successful_solves = 0
        self._failed_solves = 0

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Name of the solving service."""
        pass

    @property
    @abstractmethod
    def supported_types(self) -> List[CaptchaType]:
        """List of supported CAPTCHA types."""
        pass

    @abstractmethod
    async def _submit_task(self, captcha_type: CaptchaType, sitekey: str, page_url: str) -> str:
        """
        Submit a CAPTCHA solving task.

        Returns task_id for tracking.
        """
        pass

    @abstractmethod
    async def _get_result(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        """Get result for a submitted task."""
        pass

    async def solve(self, captcha_type: CaptchaType, sitekey: str, page_url: str) -> SolveResult:
        """
        Solve a CAPTCHA.

        Args:
            captcha_type: Type of CAPTCHA
            sitekey: Site key from the CAPTCHA element
            page_url: URL where CAPTCHA appears

        Returns:
            SolveResult with solution or error
        """
        if captcha_type not in self.supported_types:
            return SolveResult(
                status=SolverStatus.UNSUPPORTED,
                captcha_type=captcha_type,
                error=f"{self.service_name} does not support {captcha_type.value}",
            )

        self._total_requests += 1
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        try:
            task_id = await self._submit_task(captcha_type, sitekey, page_url)

            elapsed = 0.0
            while elapsed < self.timeout_seconds:
                await asyncio.sleep(self.poll_interval)
                elapsed = loop.time() - start_time

                result = await self._get_result(task_id, captcha_type)

                if result.status == SolverStatus.SOLVED:
                    result.solve_time_seconds = elapsed
                    self._successful_solves += 1
                    logger.info(
                        f"{self.service_name} solved {captcha_type.value} "
                        f"in {elapsed:.1f}s"
                    )
                    return result

                if result.status == SolverStatus.FAILED:
                    self._failed_solves += 1
                    return result

            self._failed_solves += 1
            return SolveResult(
                status=SolverStatus.TIMEOUT,
                captcha_type=captcha_type,
                task_id=task_id,
                solve_time_seconds=elapsed,
                error=f"Timeout after {self.timeout_seconds}s",
            )

        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as e:
            self._failed_solves += 1
            logger.error(f"{self.service_name} solve error: {e}")
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                error=str(e) or type(e).__name__,
            )

    def get_stats(self) -> Dict[str, Any]:
        """Get solver statistics."""
        return {
            "service": self.service_name,
            "total_requests": self._total_requests,
            "successful_solves": self._successful_solves,
            "failed_solves": self._failed_solves,
            "success_rate": (
                self._successful_solves / self._total_requests
                if self._total_requests > 0
                else 0.0
            ),
        }


class TwoCaptchaSolver(BaseCaptchaSolver):
    """
    2Captcha solving service integration.

    API Documentation: https://2captcha.com/2captcha-api
    """

    API_BASE = "https://2captcha.com"

    @property
    def service_name(self) -> str:
        return "2Captcha"

    @property
    def supported_types(self) -> List[CaptchaType]:
        return list(CaptchaType)

    async def _submit_task(self, captcha_type: CaptchaType, sitekey: str, page_url: str) -> str:
        """Submit task to 2Captcha."""
        params = {
            "key": self.api_key,
            "json": 1,
            "pageurl": page_url,
        }

        if captcha_type == CaptchaType.RECAPTCHA_V2:
            params.update({"method": "userrecaptcha", "googlekey": sitekey})
        elif captcha_type == CaptchaType.RECAPTCHA_V3:
            params.update({
                "method": "userrecaptcha",
                "version": "v3",
                "googlekey": sitekey,
                "action": "verify",
                "min_score": 0.3,
            })
        elif captcha_type == CaptchaType.HCAPTCHA:
            params.update({"method": "hcaptcha", "sitekey": sitekey})
        elif captcha_type == CaptchaType.TURNSTILE:
            params.update({"method": "turnstile", "sitekey": sitekey})

        async with aiohttp.ClientSession() as session:
            async with session.post(f"{self.API_BASE}/in.php", data=params) as resp:
                data = await resp.json(content_type=None)

        if data.get("status") != 1:
            raise ValueError(f"2Captcha submit error: {data.get('error_text', data.get('request'))}")

        return data["request"]

    async def _get_result(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        """Get result from 2Captcha."""
        params = {
            "key": self.api_key,
            "action": "get",
            "id": task_id,
            "json": 1,
        }

        async with aiohttp.ClientSession() as session:
            async with session.get(f"{self.API_BASE}/res.php", params=params) as resp:
                data = await resp.json(content_type=None)

        if data.get("status") == 1:
            return SolveResult(
                status=SolverStatus.SOLVED,
                captcha_type=captcha_type,
                solution=data["request"],
                task_id=task_id,
            )

        error = data.get("request", "Unknown error")
        if error == "CAPCHA_NOT_READY":
            return SolveResult(status=SolverStatus.PROCESSING, captcha_type=captcha_type, task_id=task_id)

        return SolveResult(
            status=SolverStatus.FAILED,
            captcha_type=captcha_type,
            task_id=task_id,
            error=error,
        )


class _TaskApiSolver(BaseCaptchaSolver):
    """Shared createTask/getTaskResult protocol used by CapSolver and Anti-Captcha."""

    API_BASE = ""
    TASK_TYPES: Dict[CaptchaType, str] = {}

    @property
    def supported_types(self) -> List[CaptchaType]:
        return list(self.TASK_TYPES)

    def _task(self, captcha_type: CaptchaType, sitekey: str, page_url: str) -> Dict[str, Any]:
        task = {
            "type": self.TASK_TYPES[captcha_type],
            "websiteURL": page_url,
            "websiteKey": sitekey,
        }
        if captcha_type == CaptchaType.RECAPTCHA_V3:
            task.update({"pageAction": "verify", "minScore": 0.3})
        return task

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{self.API_BASE}{path}", json=payload) as resp:
                return await resp.json(content_type=None)

    async def _submit_task(self, captcha_type: CaptchaType, sitekey: str, page_url: str) -> str:
        data = await self._post("/createTask", {
            "clientKey": self.api_key,
            "task": self._task(captcha_type, sitekey, page_url),
        })
        if data.get("errorId"):
            raise ValueError(
                f"{self.service_name} submit error: "
                f"{data.get('errorCode')} {data.get('errorDescription', '')}".strip()
            )
        return str(data["taskId"])

    async def _get_result(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        data = await self._post("/getTaskResult", {"clientKey": self.api_key, "taskId": task_id})

        if data.get("errorId"):
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                task_id=task_id,
                error=data.get("errorCode") or "Unknown error",
            )

        if data.get("status") != "ready":
            return SolveResult(status=SolverStatus.PROCESSING, captcha_type=captcha_type, task_id=task_id)

        solution = data.get("solution") or {}
        token = solution.get("gRecaptchaResponse") or solution.get("token")
        if not token:
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                task_id=task_id,
                error="Empty solution",
            )
        return SolveResult(
            status=SolverStatus.SOLVED,
            captcha_type=captcha_type,
            solution=token,
            task_id=task_id,
        )


class CapSolverSolver(_TaskApiSolver):
    """
    CapSolver integration.

    API Documentation: https://docs.capsolver.com/
    """

    API_BASE = "https://api.capsolver.com"
    TASK_TYPES = {
        CaptchaType.RECAPTCHA_V2: "ReCaptchaV2TaskProxyLess",
        CaptchaType.RECAPTCHA_V3: "ReCaptchaV3TaskProxyLess",
        CaptchaType.TURNSTILE: "AntiTurnstileTaskProxyLess",
    }

    @property
    def service_name(self) -> str:
        return "CapSolver"


class AntiCaptchaSolver(_TaskApiSolver):
    """
    Anti-Captcha integration.

    API Documentation: https://anti-captcha.com/apidoc
    """

    API_BASE = "https://api.anti-captcha.com"
    TASK_TYPES = {
        CaptchaType.RECAPTCHA_V2: "RecaptchaV2TaskProxyless",
        CaptchaType.RECAPTCHA_V3: "RecaptchaV3TaskProxyless",
        CaptchaType.HCAPTCHA: "HCaptchaTaskProxyless",
        CaptchaType.TURNSTILE: "TurnstileTaskProxyless",
    }

    @property
    def service_name(self) -> str:
        return "AntiCaptcha"


class MockCaptchaSolver(BaseCaptchaSolver):
    """
    Mock solver for testing.

    Returns a fake solution after a configurable delay, or fails every time.
    """

    def __init__(self, solve_delay: float = 0.0, fail: bool = False, name: str = "MockSolver"):
        super().__init__(api_key="mock", timeout_seconds=30, poll_interval=0.0)
        self.solve_delay = solve_delay
        self.fail = fail
        self._name = name
        self._task_start_times: Dict[str, float] = {}

    @property
    def service_name(self) -> str:
        return self._name

    @property
    def supported_types(self) -> List[CaptchaType]:
        return list(CaptchaType)

    async def _submit_task(self, captcha_type: CaptchaType, sitekey: str, page_url: str) -> str:
        task_id = str(uuid.uuid4())
        self._task_start_times[task_id] = asyncio.get_running_loop().time()
        return task_id

    async def _get_result(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        start_time = self._task_start_times.get(task_id, 0)
        elapsed = asyncio.get_running_loop().time() - start_time

        if elapsed < self.solve_delay:
            return SolveResult(status=SolverStatus.PROCESSING, captcha_type=captcha_type, task_id=task_id)

        if self.fail:
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                task_id=task_id,
                error="Configured failure (mock)",
            )

        return SolveResult(
            status=SolverStatus.SOLVED,
            captcha_type=captcha_type,
            solution="mock-solution-token-" + task_id[:8],
            task_id=task_id,
        )


class CaptchaSolverChain:
    """
    Ordered provider fallback with a short-lived token cache.

    Tries each solver in priority order until one returns a token. Each
    provider failure is logged with structured data and the next one is
    tried.
    """

    def __init__(
        self,
        solvers: List[BaseCaptchaSolver],
        cache_seconds: float = CAPTCHA_TOKEN_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.solvers = list(solvers)
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._cache: Dict[Tuple[str, str, str], Tuple[str, float]] = {}

    def __len__(self) -> int:
        return len(self.solvers)

    async def solve(self, kind: str, site_key: str, page_url: str) -> Optional[str]:
        """Return a token for the challenge, or None when every provider failed."""
        try:
            captcha_type = CaptchaType(kind)
        except ValueError:
            logger.warning(f"Unsupported CAPTCHA type {kind!r} on {page_url}")
            return None

        cache_key = (kind, site_key, page_url)
        cached = self._cache.get(cache_key)
        if cached is not None:
            token, expires_at = cached
            if self._clock() < expires_at:
                logger.debug(f"Reusing cached {kind} token for {page_url}")
                return token
            del self._cache[cache_key]

        for solver in self.solvers:
            try:
                result = await solver.solve(captcha_type, site_key, page_url)
            except Exception as e:
                logger.warning(
                    f"CAPTCHA provider {solver.service_name} raised for {page_url}: "
                    f"{type(e).__name__}: {e}",
                    exc_info=True,
                    extra={
                        "provider": solver.service_name,
                        "captcha_type": kind,
                        "page_url": page_url,
                        "status": SolverStatus.FAILED.value,
                        "error": str(e) or type(e).__name__,
                    },
                )
                continue
            if result.status == SolverStatus.SOLVED and result.solution:
                self._cache[cache_key] = (result.solution, self._clock() + self.cache_seconds)
                return result.solution

            logger.warning(
                f"CAPTCHA provider {solver.service_name} failed for {page_url}: "
                f"{result.status.value}",
                extra={
                    "provider": solver.service_name,
                    "captcha_type": kind,
                    "page_url": page_url,
                    "status": result.status.value,
                    "error": result.error,
                },
            )

        logger.error(f"All {len(self.solvers)} CAPTCHA providers failed for {page_url}")
        return None


# Factory function
def get_solver(service: str, api_key: Optional[str] = None, **kwargs) -> BaseCaptchaSolver:
    """
    Get a CAPTCHA solver instance.

    Args:
        service: Solver service name (2captcha, capsolver, anticaptcha, mock)
        api_key: API key for the service
        **kwargs: Additional solver options

    Returns:
        Configured solver instance
    """
    service = service.lower()

    if service == "2captcha":
        return TwoCaptchaSolver(api_key=api_key, **kwargs)
    elif service == "capsolver":
        return CapSolverSolver(api_key=api_key, **kwargs)
    elif service == "anticaptcha":
        return AntiCaptchaSolver(api_key=api_key, **kwargs)
    elif service == "mock":
        return MockCaptchaSolver(**kwargs)
    else:
        raise ValueError(f"Unknown solver service: {service}")


def build_solver_chain(
    solver_config: Dict[str, Any],
    cache_seconds: float = CAPTCHA_TOKEN_CACHE_SECONDS,
) -> CaptchaSolverChain:
    """
    Build a solver chain from a challenge_solver_config mapping.

    Each entry is either ``name: api_key`` or
    ``name: {"api_key": ..., "priority": n}``; lower priority runs first.
    """
    entries = []
    for index, (name, value) in enumerate(solver_config.items()):
        if isinstance(value, dict):
            api_key = value.get("api_key")
            priority = value.get("priority", index)
        else:
            api_key, priority = value, index
        if name.lower() != "mock" and not api_key:
            logger.warning(f"Skipping CAPTCHA provider {name}: no API key")
            continue
        entries.append((priority, index, name, api_key))

    solvers = [
        get_solver(name) if name.lower() == "mock" else get_solver(name, api_key=api_key)
        for _, _, name, api_key in sorted(entries)
    ]
    return CaptchaSolverChain(solvers, cache_seconds=cache_seconds)
