"""
Infrastructure Package.

Provides the cross-task shared components: the proxy pool manager and the
browser session pool, plus the browser-automation contract.
"""

from .proxy_rotation import (
    DIRECT_CONNECTION,
    ProxyEndpoint,
    ProxyPool,
    ProxyType,
    RotationStrategy,
    load_proxies_from_file,
    create_proxy_pool_from_env,
)
from .browser_driver import (
    BrowserLauncher,
    BrowserSessionHandle,
    NavigationResult,
    PlaywrightLauncher,
    PlaywrightSession,
)
from .browser_pool import (
    BrowserSession,
    BrowserSessionPool,
    PoolStatus,
)

__all__ = [
    # Proxy Rotation
    "DIRECT_CONNECTION",
    "ProxyEndpoint",
    "ProxyPool",
    "ProxyType",
    "RotationStrategy",
    "load_proxies_from_file",
    "create_proxy_pool_from_env",
    # Browser Driver
    "BrowserLauncher",
    "BrowserSessionHandle",
    "NavigationResult",
    "PlaywrightLauncher",
    "PlaywrightSession",
    # Session Pool
    "BrowserSession",
    "BrowserSessionPool",
    "PoolStatus",
]
