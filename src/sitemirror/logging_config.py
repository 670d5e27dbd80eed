"""Logging configuration for the site mirror.

Every record is stamped with the job and page being worked on, taken from
context variables the orchestrator binds. asyncio tasks copy the context
they were created in, so page tasks inherit the job id.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(job_id)s] %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(job_id)s %(page_url)s] %(message)s'

# Raised to INFO when the mirror itself logs at DEBUG
CHATTY_LIBRARIES = ('httpx', 'playwright', 'aiohttp')
# Always WARNING
NOISY_LIBRARIES = ('httpcore', 'hpack', 'asyncio')

_job_id: ContextVar[str] = ContextVar('sitemirror_job_id', default='-')
_page_url: ContextVar[str] = ContextVar('sitemirror_page_url', default='-')


class JobContextFilter(logging.Filter):
    """Adds ``job_id`` and ``page_url`` attributes to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = _job_id.get()
        record.page_url = _page_url.get()
        return True


def bind_job(job_id: str) -> Token:
    """Attribute log records in the current context to a job."""
    return _job_id.set(job_id)


def unbind_job(token: Token) -> None:
    _job_id.reset(token)


@contextmanager
def page_context(url: str) -> Iterator[None]:
    """Attribute log records inside the block to a page."""
    token = _page_url.set(url)
    try:
        yield
    finally:
        _page_url.reset(token)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None
) -> None:
    """Configure logging for the site mirror.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path; its lines also carry the page URL
        format_string: Optional custom format string for every handler
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    context_filter = JobContextFilter()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
    handlers = [console]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(format_string or FILE_FORMAT))
        handlers.append(file_handler)

    for handler in handlers:
        handler.addFilter(context_filter)

    logging.basicConfig(
        level=numeric_level,
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    library_level = logging.INFO if numeric_level <= logging.DEBUG else logging.WARNING
    for name in CHATTY_LIBRARIES:
        logging.getLogger(name).setLevel(library_level)
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
