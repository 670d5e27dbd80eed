"""
Challenge classification.

One deterministic function maps (status code, serialized markup, URL) to a
ChallengeKind. Identical inputs always classify identically.

Check order: captcha, script challenge, hard block, none.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup

from sitemirror.models import ChallengeKind
from sitemirror.protection.script_challenge import ScriptChallengeParams, extract_challenge_params

# Statuses that mean the request itself was refused
HARD_BLOCK_STATUSES = frozenset({403, 429, 451})

# Statuses challenge interstitials are usually served with
CHALLENGE_STATUSES = frozenset({403, 429, 503})

# Interstitial markers: the page is a gate, not content
INTERSTITIAL_MARKERS = {
    "cf_captcha": "cf_captcha",
    "cf_chl_opt": "_cf_chl_opt",
    "challenge_form": 'id="challenge-form"',
    "challenge_platform": "/cdn-cgi/challenge-platform/",
    "captcha_delivery": "captcha-delivery.com",
    "just_a_moment": "just a moment...",
    "verify_human": "verify you are human",
    "verify_human_alt": "verify you're human",
    "attention_required": "attention required!",
}

CAPTCHA_MARKERS = {
    "turnstile": "cf-turnstile",
    "recaptcha": "g-recaptcha",
    "recaptcha_script": "recaptcha/api.js",
    "recaptcha_enterprise": "recaptcha/enterprise.js",
    "hcaptcha": "h-captcha",
    "hcaptcha_script": "hcaptcha.com/1/api.js",
}

SCRIPT_MARKERS = {
    "jschl_vc": "jschl_vc",
    "jschl_answer": "jschl_answer",
    "cf_browser_verification": "cf-browser-verification",
    "cf_challenge_running": "cf-challenge-running",
    "checking_browser": "checking your browser",
    "akamai_sec_cpt": "sec-cpt-if",
    "akamai_challenge": "ak-challenge",
}

SCRIPT_URL_TOKENS = ("__cf_chl_j_tk", "__cf_chl_rt_tk")
CAPTCHA_URL_TOKENS = ("__cf_chl_captcha_tk__", "__cf_chl_tk")

BLOCK_TEXT_PATTERNS = [
    re.compile(r"access denied", re.I),
    re.compile(r"you have been blocked", re.I),
    re.compile(r"request blocked", re.I),
    re.compile(r"error\s*1020", re.I),
    re.compile(r"too many requests", re.I),
]

# Only the interstitial's title and headings are checked for block text
_BLOCK_TEXT_TAGS = ("title", "h1", "h2")


@dataclass
class Classification:
    """Result of classifying one serialized page."""
    kind: ChallengeKind
    provider: Optional[str] = None  # cloudflare, akamai, generic
    markers: List[str] = field(default_factory=list)
    captcha_type: Optional[str] = None  # recaptcha_v2, recaptcha_v3, hcaptcha, turnstile
    site_key: Optional[str] = None
    script_params: Optional[ScriptChallengeParams] = None

    @property
    def is_challenge(self) -> bool:
        return self.kind != ChallengeKind.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "provider": self.provider,
            "markers": list(self.markers),
            "captcha_type": self.captcha_type,
            "site_key": self.site_key,
        }


def _matched(markers: Dict[str, str], haystack: str) -> List[str]:
    return [name for name, needle in markers.items() if needle in haystack]


def _detect_provider(lowered: str, url: str) -> str:
    if "cloudflare" in lowered or "cf-" in lowered or "__cf_chl" in url or "_cf_chl" in lowered:
        return "cloudflare"
    if "akamai" in lowered or "sec-cpt" in lowered or "ak-challenge" in lowered:
        return "akamai"
    return "generic"


def _captcha_details(soup: BeautifulSoup, lowered: str) -> Dict[str, Optional[str]]:
    if "cf-turnstile" in lowered:
        captcha_type = "turnstile"
        widget = soup.select_one(".cf-turnstile[data-sitekey]")
    elif "h-captcha" in lowered or "hcaptcha.com" in lowered:
        captcha_type = "hcaptcha"
        widget = soup.select_one(".h-captcha[data-sitekey]")
    else:
        widget = soup.select_one(".g-recaptcha[data-sitekey]")
        captcha_type = "recaptcha_v2" if widget is not None else "recaptcha_v3"

    widget = widget or soup.select_one("[data-sitekey]")
    site_key = widget.get("data-sitekey") if widget is not None else None

    if not site_key:
        # reCAPTCHA v3 carries its key in the loader URL: api.js?render=<key>
        for script in soup.find_all("script", src=True):
            src = script["src"]
            if "recaptcha" in src and "render=" in src:
                render = parse_qs(urlparse(src).query).get("render", [None])[0]
                if render and render != "explicit":
                    site_key = render
                    break

    return {"captcha_type": captcha_type, "site_key": site_key or None}


def _block_text(soup: BeautifulSoup) -> List[str]:
    texts = " ".join(
        tag.get_text(" ", strip=True)
        for name in _BLOCK_TEXT_TAGS
        for tag in soup.find_all(name)
    )
    return [pattern.pattern for pattern in BLOCK_TEXT_PATTERNS if pattern.search(texts)]


def classify_page(status_code: Optional[int], html: str, url: str) -> Classification:
    """Classify a navigated page into a ChallengeKind.

    Args:
        status_code: HTTP status of the navigation, None when unknown
        html: Serialized markup
        url: Final URL of the page

    Returns:
        Classification with the matched markers and any extracted parameters
    """
    html = html or ""
    lowered = html.lower()
    lowered_url = (url or "").lower()
    soup = BeautifulSoup(html, "html.parser")
    provider = _detect_provider(lowered, lowered_url)

    interstitial = _matched(INTERSTITIAL_MARKERS, lowered)
    gated = bool(interstitial) or status_code in CHALLENGE_STATUSES

    # Captcha widgets also appear on ordinary forms; only a gated page counts
    captcha = _matched(CAPTCHA_MARKERS, lowered)
    captcha_url = [token for token in CAPTCHA_URL_TOKENS if token in lowered_url]
    if (captcha and gated) or captcha_url:
        details = _captcha_details(soup, lowered)
        return Classification(
            kind=ChallengeKind.CAPTCHA,
            provider=provider,
            markers=sorted(captcha + captcha_url + interstitial),
            captcha_type=details["captcha_type"],
            site_key=details["site_key"],
        )

    script = _matched(SCRIPT_MARKERS, lowered)
    script_url = [token for token in SCRIPT_URL_TOKENS if token in lowered_url]
    if script or script_url or "just_a_moment" in interstitial:
        return Classification(
            kind=ChallengeKind.SCRIPT_CHALLENGE,
            provider=provider,
            markers=sorted(script + script_url + interstitial),
            script_params=extract_challenge_params(html),
        )

    if status_code in HARD_BLOCK_STATUSES:
        return Classification(
            kind=ChallengeKind.HARD_BLOCK,
            provider=provider,
            markers=[f"status_{status_code}"] + _block_text(soup),
        )

    block_text = _block_text(soup)
    if block_text:
        return Classification(
            kind=ChallengeKind.HARD_BLOCK,
            provider=provider,
            markers=block_text,
        )

    return Classification(kind=ChallengeKind.NONE)
