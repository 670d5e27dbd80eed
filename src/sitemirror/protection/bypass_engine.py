"""
Protection-Bypass Engine.

Drives the per-page state machine

    Unknown -> Classified{none|script-challenge|captcha|hard-block} -> Resolved | Failed

Each classification gets its own attempt budget with increasing backoff;
a strategy that turns the page into a different challenge kind hands over
to that kind's budget, under a global cap. Every attempt is appended to
the page's ChallengeAttempt trail.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sitemirror.cancellation import CancellationToken, cancellable_sleep
from sitemirror.config import BypassConfig
from sitemirror.exceptions import NetworkError
from sitemirror.infrastructure.browser_driver import BrowserSessionHandle, NavigationResult
from sitemirror.infrastructure.proxy_rotation import ProxyEndpoint, ProxyPool
from sitemirror.models import AccessState, ChallengeAttempt, ChallengeKind
from sitemirror.protection.captcha_solver import CaptchaSolverChain
from sitemirror.protection.challenge_classifier import Classification, classify_page
from sitemirror.protection.script_challenge import SUBMIT_ANSWER_SCRIPT, compute_answer

logger = logging.getLogger(__name__)

# Response field each widget reads its token from
CAPTCHA_RESPONSE_FIELDS = {
    "recaptcha_v2": "g-recaptcha-response",
    "recaptcha_v3": "g-recaptcha-response",
    "hcaptcha": "h-captcha-response",
    "turnstile": "cf-turnstile-response",
}

INJECT_TOKEN_SCRIPT = """
({field, token}) => {
    let targets = document.querySelectorAll(`[name="${field}"], #${field}`);
    if (targets.length === 0) {
        const form = document.querySelector('form');
        const input = document.createElement('textarea');
        input.name = field;
        input.style.display = 'none';
        (form || document.body).appendChild(input);
        targets = [input];
    }
    targets.forEach(el => {
        el.value = token;
        el.dispatchEvent(new Event('change', { bubbles: true }));
    });

    // Fire the widget callback
    const widget = document.querySelector('[data-callback]');
    const callbackName = widget && widget.getAttribute('data-callback');
    if (callbackName && typeof window[callbackName] === 'function') {
        try { window[callbackName](token); } catch (e) {}
    }
    if (typeof ___grecaptcha_cfg !== 'undefined') {
        Object.values(___grecaptcha_cfg.clients || {}).forEach(client => {
            try {
                const holder = Object.values(client).find(v => v && v.callback);
                if (holder && typeof holder.callback === 'function') {
                    holder.callback(token);
                }
            } catch (e) {}
        });
    }

    // Trigger re-validation
    const form = targets[0].form || document.querySelector('form');
    if (form) {
        form.submit();
        return true;
    }
    return false;
}
"""


@dataclass
class BypassOutcome:
    """Result of resolving one page's access state."""
    state: AccessState
    classification: Classification
    initial_kind: ChallengeKind
    attempts: List[ChallengeAttempt] = field(default_factory=list)
    resolved_at: Optional[datetime] = None
    html: str = ""
    status: Optional[int] = None
    final_url: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.state == AccessState.RESOLVED


class BypassEngine:
    """
    Resolves protection challenges on a leased browser session.

    Usage:
        engine = BypassEngine(solver_chain=chain, proxy_pool=pool)
        outcome = await engine.resolve(session, url, nav, proxy, cancel_token)
    """

    def __init__(
        self,
        solver_chain: Optional[CaptchaSolverChain] = None,
        proxy_pool: Optional[ProxyPool] = None,
        config: Optional[BypassConfig] = None,
    ):
        self.solver_chain = solver_chain
        self.proxy_pool = proxy_pool
        self.config = config or BypassConfig()

    async def resolve(
        self,
        session: BrowserSessionHandle,
        url: str,
        nav: NavigationResult,
        proxy: Optional[ProxyEndpoint] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BypassOutcome:
        """
        Classify the navigated page and resolve any challenge on it.

        Args:
            session: Session the page was navigated in
            url: Requested page URL
            nav: Result of the initial navigation
            proxy: Endpoint the session is bound to
            cancel_token: Job cancellation token

        Returns:
            BypassOutcome in state RESOLVED or FAILED
        """
        html = await session.serialize()
        status = nav.status
        final_url = nav.final_url or url
        classification = classify_page(status, html, final_url)

        outcome = BypassOutcome(
            state=AccessState.CLASSIFIED,
            classification=classification,
            initial_kind=classification.kind,
            html=html,
            status=status,
            final_url=final_url,
        )
        if classification.is_challenge:
            logger.info(
                f"{url} classified as {classification.kind.value} "
                f"({classification.provider}; {', '.join(classification.markers)})"
            )

        per_kind: Dict[ChallengeKind, int] = {}
        global_cap = 2 * self.config.max_attempts

        while classification.is_challenge:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(url)

            kind = classification.kind
            used = per_kind.get(kind, 0)
            if used >= self.config.max_attempts or len(outcome.attempts) >= global_cap:
                break

            attempt_number = used + 1
            per_kind[kind] = attempt_number
            if attempt_number > 1:
                await cancellable_sleep(self.config.backoff_for(attempt_number - 1), cancel_token)

            strategy = self._strategy_name(classification)
            started = time.monotonic()
            detail = None
            try:
                classification, html, status, detail = await self._attempt(
                    session, url, classification, status, attempt_number, cancel_token
                )
            except NetworkError as e:
                detail = f"{type(e).__name__}: {e.message}"
                logger.warning(f"{strategy} attempt {attempt_number} on {url} errored: {e.message}")
                outcome.attempts.append(ChallengeAttempt(
                    page_url=url,
                    kind=kind,
                    strategy_tried=strategy,
                    outcome="error",
                    duration_ms=(time.monotonic() - started) * 1000,
                    detail=detail,
                ))
                continue

            if not classification.is_challenge:
                result = "resolved"
            elif classification.kind != kind:
                result = "reclassified"
            else:
                result = "failed"
            outcome.attempts.append(ChallengeAttempt(
                page_url=url,
                kind=kind,
                strategy_tried=strategy,
                outcome=result,
                duration_ms=(time.monotonic() - started) * 1000,
                detail=detail,
            ))
            logger.debug(f"{strategy} attempt {attempt_number} on {url}: {result}")

        outcome.classification = classification
        outcome.html = html
        outcome.status = status

        if classification.is_challenge:
            outcome.state = AccessState.FAILED
            logger.warning(
                f"Could not resolve {classification.kind.value} on {url} "
                f"after {len(outcome.attempts)} attempts"
            )
            if self.proxy_pool is not None and proxy is not None:
                await self.proxy_pool.report_outcome(proxy, success=False, reason="challenge")
        else:
            outcome.state = AccessState.RESOLVED
            outcome.resolved_at = datetime.now()
            if outcome.attempts:
                logger.info(f"Resolved {outcome.initial_kind.value} on {url} in {len(outcome.attempts)} attempts")

        return outcome

    @staticmethod
    def _strategy_name(classification: Classification) -> str:
        if classification.kind == ChallengeKind.SCRIPT_CHALLENGE:
            return "script-active" if classification.script_params else "script-passive"
        if classification.kind == ChallengeKind.CAPTCHA:
            return f"captcha-{classification.captcha_type or 'unknown'}"
        return "hard-block-renavigate"

    async def _attempt(
        self,
        session: BrowserSessionHandle,
        url: str,
        classification: Classification,
        status: Optional[int],
        attempt_number: int,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Classification, str, Optional[int], Optional[str]]:
        if classification.kind == ChallengeKind.SCRIPT_CHALLENGE:
            return await self._solve_script(session, url, classification, cancel_token)
        if classification.kind == ChallengeKind.CAPTCHA:
            return await self._solve_captcha(session, url, classification, cancel_token)
        return await self._retry_hard_block(session, url, attempt_number, cancel_token)

    async def _solve_script(
        self,
        session: BrowserSessionHandle,
        url: str,
        classification: Classification,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Classification, str, Optional[int], Optional[str]]:
        params = classification.script_params
        if params is None:
            # Parameters not extractable: let the page's own script run
            await cancellable_sleep(self.config.passive_wait_seconds, cancel_token)
            html = await session.serialize()
            return classify_page(None, html, url), html, None, "passive wait"

        try:
            answer = compute_answer(params, url)
        except ValueError as e:
            await cancellable_sleep(self.config.passive_wait_seconds, cancel_token)
            html = await session.serialize()
            return classify_page(None, html, url), html, None, f"passive wait ({e})"

        submitted = await session.evaluate(SUBMIT_ANSWER_SCRIPT, answer)
        detail = f"answer={answer}" if submitted else f"answer={answer}; form not found"
        new_classification, html = await self._poll_until_changed(
            session, url, ChallengeKind.SCRIPT_CHALLENGE, cancel_token
        )
        return new_classification, html, None, detail

    async def _solve_captcha(
        self,
        session: BrowserSessionHandle,
        url: str,
        classification: Classification,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Classification, str, Optional[int], Optional[str]]:
        html = await session.serialize()
        if not classification.site_key:
            return classification, html, None, "site key not found"
        if self.solver_chain is None or len(self.solver_chain) == 0:
            return classification, html, None, "no CAPTCHA solver configured"

        captcha_type = classification.captcha_type or "recaptcha_v2"
        token = await self.solver_chain.solve(captcha_type, classification.site_key, url)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled(url)
        if not token:
            return classification, html, None, "all providers failed"

        field_name = CAPTCHA_RESPONSE_FIELDS.get(captcha_type, "g-recaptcha-response")
        await session.evaluate(INJECT_TOKEN_SCRIPT, {"field": field_name, "token": token})
        new_classification, html = await self._poll_until_changed(
            session, url, ChallengeKind.CAPTCHA, cancel_token
        )
        return new_classification, html, None, f"token injected into {field_name}"

    async def _retry_hard_block(
        self,
        session: BrowserSessionHandle,
        url: str,
        attempt_number: int,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Classification, str, Optional[int], Optional[str]]:
        await cancellable_sleep(self.config.backoff_for(attempt_number), cancel_token)
        nav = await session.navigate(url, self.config.navigation_timeout_seconds)
        html = await session.serialize()
        return classify_page(nav.status, html, nav.final_url or url), html, nav.status, f"status={nav.status}"

    async def _poll_until_changed(
        self,
        session: BrowserSessionHandle,
        url: str,
        kind: ChallengeKind,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[Classification, str]:
        """Poll the page at a fixed interval until its classification leaves `kind`."""
        deadline = time.monotonic() + self.config.poll_timeout_seconds
        while True:
            await cancellable_sleep(self.config.poll_interval_seconds, cancel_token)
            html = await session.serialize()
            classification = classify_page(None, html, url)
            if classification.kind != kind or time.monotonic() >= deadline:
                return classification, html
