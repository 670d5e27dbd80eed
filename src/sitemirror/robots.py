"""
robots.txt rules for the crawl frontier.

Fetched once per job from the root origin. Missing, unreadable or
unreachable robots.txt allows everything.
"""

import logging
from typing import List
from urllib.robotparser import RobotFileParser

import httpx

from sitemirror.constants import ROBOTS_USER_AGENT
from sitemirror.utils.urls import origin_of

logger = logging.getLogger(__name__)


class RobotsPolicy:
    """
    Parsed robots.txt for one origin.

    Usage:
        policy = RobotsPolicy("User-agent: *\\nDisallow: /private")
        policy.allows("https://example.com/private/a")  # False
    """

    def __init__(self, content: str = "", user_agent: str = ROBOTS_USER_AGENT):
        self.user_agent = user_agent
        self._parser = RobotFileParser()
        self._parser.parse(content.splitlines())

    def allows(self, url: str) -> bool:
        return self._parser.can_fetch(self.user_agent, url)

    @property
    def sitemaps(self) -> List[str]:
        """Sitemap URLs listed by Sitemap: lines."""
        return list(self._parser.site_maps() or [])


async def fetch_robots(
    client: httpx.AsyncClient,
    root_url: str,
    user_agent: str = ROBOTS_USER_AGENT,
) -> RobotsPolicy:
    """
    Fetch robots.txt for the origin of root_url.

    Args:
        client: HTTP client to fetch with
        root_url: Any URL on the origin
        user_agent: Product token rules are matched against

    Returns:
        RobotsPolicy; an allow-all policy when robots.txt is not served
    """
    robots_url = f"{origin_of(root_url)}/robots.txt"
    try:
        response = await client.get(robots_url)
    except httpx.HTTPError as e:
        logger.warning(f"Could not fetch {robots_url}: {type(e).__name__}: {e}; allowing all")
        return RobotsPolicy(user_agent=user_agent)

    if response.status_code != 200:
        logger.info(f"No robots.txt at {robots_url} (HTTP {response.status_code}); allowing all")
        return RobotsPolicy(user_agent=user_agent)

    policy = RobotsPolicy(response.text, user_agent=user_agent)
    logger.info(f"Loaded robots.txt from {robots_url} ({len(policy.sitemaps)} sitemaps listed)")
    return policy
