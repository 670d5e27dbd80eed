"""
Protection Package.

Classifies navigated pages into challenge kinds and resolves script
challenges, CAPTCHAs and hard blocks on a leased browser session.
"""

from .challenge_classifier import (
    Classification,
    classify_page,
)
from .script_challenge import (
    ScriptChallengeParams,
    compute_answer,
    extract_challenge_params,
    safe_eval,
)
from .captcha_solver import (
    AntiCaptchaSolver,
    BaseCaptchaSolver,
    CapSolverSolver,
    CaptchaSolverChain,
    CaptchaType,
    MockCaptchaSolver,
    SolveResult,
    SolverStatus,
    TwoCaptchaSolver,
    build_solver_chain,
    get_solver,
)
from .bypass_engine import (
    BypassEngine,
    BypassOutcome,
)

__all__ = [
    # Classification
    "Classification",
    "classify_page",
    # Script challenges
    "ScriptChallengeParams",
    "compute_answer",
    "extract_challenge_params",
    "safe_eval",
    # CAPTCHA solving
    "AntiCaptchaSolver",
    "BaseCaptchaSolver",
    "CapSolverSolver",
    "CaptchaSolverChain",
    "CaptchaType",
    "MockCaptchaSolver",
    "SolveResult",
    "SolverStatus",
    "TwoCaptchaSolver",
    "build_solver_chain",
    "get_solver",
    # Engine
    "BypassEngine",
    "BypassOutcome",
]
