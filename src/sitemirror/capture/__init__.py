"""
Capture Package.

Enumerates page resources, downloads them into a content-addressed store
and rewrites references so the mirror works offline.
"""

from .extractor import (
    extract_anchor_links,
    extract_asset_urls,
    extract_css_references,
    parse_html,
)
from .paths import (
    asset_local_path,
    disambiguate_path,
    page_local_path,
    relative_href,
)
from .rewriter import (
    rewrite_css,
    rewrite_html,
    rewrite_page_links,
)
from .asset_store import (
    AssetStore,
    DownloadedBody,
)
from .downloader import AssetDownloader
from .pipeline import (
    AssetPipeline,
    CaptureResult,
)

__all__ = [
    # Extraction
    "extract_anchor_links",
    "extract_asset_urls",
    "extract_css_references",
    "parse_html",
    # Layout
    "asset_local_path",
    "disambiguate_path",
    "page_local_path",
    "relative_href",
    # Rewriting
    "rewrite_css",
    "rewrite_html",
    "rewrite_page_links",
    # Storage
    "AssetStore",
    "DownloadedBody",
    "AssetDownloader",
    # Pipeline
    "AssetPipeline",
    "CaptureResult",
]
