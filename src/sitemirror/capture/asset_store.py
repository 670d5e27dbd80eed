"""
Job-wide content-addressed asset registry.

Deduplicates first by absolute URL, including downloads still in flight,
then by SHA-256 of the downloaded bytes, so byte-identical content served
at different URLs is stored once.
"""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from sitemirror.capture.paths import asset_local_path
from sitemirror.exceptions import InvariantViolation, JobCancelled, MirrorError
from sitemirror.models import AssetRecord

logger = logging.getLogger(__name__)


@dataclass
class DownloadedBody:
    """A fully downloaded resource, buffered or staged on disk."""
    url: str
    content_hash: str
    byte_size: int
    mime_type: Optional[str] = None
    data: Optional[bytes] = None
    staged_path: Optional[Path] = None

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.staged_path is not None:
            return self.staged_path.read_bytes()
        return b""

    def discard(self) -> None:
        if self.staged_path is not None and self.staged_path.exists():
            self.staged_path.unlink()


class AssetStore:
    """
    Registry of every asset captured in a job.

    The store is the only writer of files under ``assets/``. Callers
    supply a download coroutine; concurrent requests for the same URL
    share one download.
    """

    def __init__(self, output_root: Path):
        self.output_root = Path(output_root)
        self._by_url: Dict[str, AssetRecord] = {}
        self._by_hash: Dict[str, AssetRecord] = {}
        self._raw_sizes: Dict[str, Optional[int]] = {}
        self._failures: Dict[str, MirrorError] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    @property
    def records(self) -> List[AssetRecord]:
        return list(self._by_hash.values())

    def __len__(self) -> int:
        return len(self._by_hash)

    def lookup(self, url: str) -> Optional[AssetRecord]:
        return self._by_url.get(url)

    def url_paths(self) -> Dict[str, str]:
        """absolute URL -> output-root-relative path, for every known URL."""
        return {url: record.local_path for url, record in self._by_url.items()}

    def restore(self, records: Iterable[AssetRecord]) -> None:
        """Re-register assets from an earlier run of the same job.

        Raw download sizes are not persisted, so collisions against restored
        records are only detected by hash.
        """
        for record in records:
            if not (self.output_root / record.local_path).exists():
                continue
            self._by_hash[record.content_hash] = record
            self._raw_sizes[record.content_hash] = None
            for url in {record.source_url} | record.alias_urls:
                self._by_url[url] = record
        logger.debug(f"Restored {len(self._by_hash)} assets")

    async def get_or_download(
        self,
        url: str,
        page_url: str,
        download: Callable[[], Awaitable[DownloadedBody]],
    ) -> Tuple[AssetRecord, bool]:
        """
        Return the record for a URL, downloading it at most once per job.

        Args:
            url: Absolute asset URL
            page_url: Page referencing the asset
            download: Coroutine factory performing the download

        Returns:
            (record, created) where created is True only for the caller
            whose download produced a new record

        Raises:
            MirrorError: the download failed (also for later callers)
            InvariantViolation: a content hash collided with a different length
        """
        while True:
            record = self._by_url.get(url)
            if record is not None:
                record.referencing_pages.add(page_url)
                return record, False
            failure = self._failures.get(url)
            if failure is not None:
                raise failure
            pending = self._inflight.get(url)
            if pending is None:
                break
            await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[url] = future
        try:
            body = await download()
            record, created = await self.register(url, page_url, body)
            return record, created
        except JobCancelled:
            raise
        except MirrorError as e:
            self._failures[url] = e
            raise
        finally:
            del self._inflight[url]
            future.set_result(None)

    async def register(self, url: str, page_url: str, body: DownloadedBody) -> Tuple[AssetRecord, bool]:
        """Store downloaded bytes under their content hash."""
        async with self._lock:
            existing = self._by_hash.get(body.content_hash)
            if existing is not None:
                raw_size = self._raw_sizes.get(body.content_hash)
                if raw_size is not None and raw_size != body.byte_size:
                    body.discard()
                    raise InvariantViolation(
                        f"Content hash {body.content_hash} seen with lengths "
                        f"{self._raw_sizes[body.content_hash]} and {body.byte_size}",
                        url=url,
                    )
                body.discard()
                if url != existing.source_url:
                    existing.alias_urls.add(url)
                existing.referencing_pages.add(page_url)
                self._by_url[url] = existing
                logger.debug(f"{url} is byte-identical to {existing.source_url}")
                return existing, False

            local_path = asset_local_path(body.content_hash, url, body.mime_type)
            target = self.output_root / local_path
            target.parent.mkdir(parents=True, exist_ok=True)
            if body.staged_path is not None:
                shutil.move(str(body.staged_path), target)
            else:
                target.write_bytes(body.data or b"")

            record = AssetRecord(
                source_url=url,
                content_hash=body.content_hash,
                local_path=local_path,
                mime_type=body.mime_type,
                byte_size=body.byte_size,
                referencing_pages={page_url},
            )
            self._by_hash[body.content_hash] = record
            self._raw_sizes[body.content_hash] = body.byte_size
            self._by_url[url] = record
            return record, True

    def replace_content(self, record: AssetRecord, content: bytes) -> None:
        """Overwrite a stored asset (rewritten stylesheets) and keep byte_size in step."""
        target = self.output_root / record.local_path
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(content)
        os.replace(tmp, target)
        record.byte_size = len(content)

    def read_content(self, record: AssetRecord) -> bytes:
        return (self.output_root / record.local_path).read_bytes()
