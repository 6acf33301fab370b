"""Reference crawl/analyze collaborators invoked by queue workers.

A stage handler is called as ``handler(unit_id, config, is_cancelled)`` and
returns a ``StageOutcome`` (or the equivalent dict envelope), optionally as an
awaitable. Handlers classify their own failures by raising
``TransientStageFailure`` or ``FatalStageFailure``.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from config import settings
from services.pipeline_errors import FatalStageFailure, TransientStageFailure
from services.pipeline_state import Stage, StageOutcome

logger = logging.getLogger(__name__)

StageHandler = Callable[[str, Dict[str, Any], Callable[[], bool]], Any]

DEFAULT_ANALYSES = ("seo", "content", "performance")
CANCELLED_MESSAGE = "cancelled"


def _import_handler(path: str) -> StageHandler:
    module_name, _, attribute = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Stage handler path must be a dotted path, got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)


def load_stage_handlers() -> Dict[Stage, StageHandler]:
    """Resolve configured collaborators for each stage."""
    return {
        Stage.CRAWL: _import_handler(settings.CRAWL_STAGE_HANDLER),
        Stage.ANALYZE: _import_handler(settings.ANALYZE_STAGE_HANDLER),
    }


def _is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _target_urls(config: Dict[str, Any]) -> List[str]:
    max_pages = int(config.get("max_pages") or settings.CRAWL_MAX_PAGES)
    candidates = [config.get("base_url")] + list(config.get("custom_urls") or [])
    urls: List[str] = []
    for raw in candidates:
        url = str(raw or "").strip()
        if url and url not in urls:
            urls.append(url)
    return urls[: max(max_pages, 1)]


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


async def _cancel_requested(is_cancelled: Callable[[], bool]) -> bool:
    poll = getattr(is_cancelled, "poll", None)
    if poll is not None:
        return await poll()
    return bool(is_cancelled())


async def _report_progress(is_cancelled: Callable[[], bool], pages_crawled: int, total_pages: int) -> None:
    report = getattr(is_cancelled, "report_progress", None)
    if report is not None:
        await report(pages_crawled, total_pages)


async def crawl_site(
    unit_id: str,
    config: Dict[str, Any],
    is_cancelled: Callable[[], bool],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> StageOutcome:
    """Fetch the base URL and custom URLs.

    Checks for cancellation before each page and reports progress after it.
    """
    urls = _target_urls(config)
    if not urls:
        raise FatalStageFailure("No target URL configured for this audit")
    invalid = [url for url in urls if not _is_http_url(url)]
    if invalid:
        raise FatalStageFailure(f"Invalid target URL: {invalid[0]}")

    pages: List[Dict[str, Any]] = []
    async with httpx.AsyncClient(
        timeout=settings.CRAWL_REQUEST_TIMEOUT_SECONDS,
        follow_redirects=True,
        headers={"User-Agent": settings.CRAWL_USER_AGENT},
        transport=transport,
    ) as client:
        for index, url in enumerate(urls):
            if await _cancel_requested(is_cancelled):
                logger.info("Crawl for %s cancelled after %s pages", unit_id, len(pages))
                return StageOutcome.failure(CANCELLED_MESSAGE)
            is_base = index == 0
            try:
                response = await client.get(url)
            except httpx.TransportError as exc:
                if is_base:
                    raise TransientStageFailure(f"Could not reach {url}: {exc.__class__.__name__}") from exc
                logger.warning("Skipping %s for %s: %s", url, unit_id, exc)
                pages.append({"url": url, "status_code": None, "error": exc.__class__.__name__})
                await _report_progress(is_cancelled, len(pages), len(urls))
                continue

            if is_base and _is_transient_status(response.status_code):
                raise TransientStageFailure(f"{url} responded with HTTP {response.status_code}")
            if is_base and response.status_code >= 400:
                raise FatalStageFailure(f"{url} responded with HTTP {response.status_code}")
            pages.append(
                {
                    "url": str(response.url),
                    "status_code": response.status_code,
                    "content_type": response.headers.get("content-type"),
                    "content_length": len(response.content),
                }
            )
            await _report_progress(is_cancelled, len(pages), len(urls))

    logger.info("Crawled %s pages for %s", len(pages), unit_id)
    return StageOutcome.ok({"pages": pages})


async def analyze_site(
    unit_id: str,
    config: Dict[str, Any],
    is_cancelled: Callable[[], bool],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> StageOutcome:
    """Request each selected analysis from the analysis service, sending the crawled pages along."""
    request_config = {key: value for key, value in config.items() if key != "crawl_result"}
    crawl_result = config.get("crawl_result")
    pages = crawl_result.get("pages", []) if isinstance(crawl_result, dict) else []
    analyses = [str(name) for name in (config.get("analyses") or DEFAULT_ANALYSES)]
    service_url = (settings.ANALYSIS_SERVICE_URL or "").rstrip("/")
    if not service_url:
        logger.warning("ANALYSIS_SERVICE_URL is not configured; skipping analyses for %s", unit_id)
        return StageOutcome.ok({"analyses": {name: "skipped" for name in analyses}})

    results: Dict[str, Any] = {}
    async with httpx.AsyncClient(timeout=settings.ANALYSIS_REQUEST_TIMEOUT_SECONDS, transport=transport) as client:
        for name in analyses:
            if await _cancel_requested(is_cancelled):
                logger.info("Analysis for %s cancelled before %s", unit_id, name)
                return StageOutcome.failure(CANCELLED_MESSAGE)
            try:
                response = await client.post(
                    f"{service_url}/{name}",
                    json={"unit_id": unit_id, "config": request_config, "pages": pages},
                )
            except httpx.TransportError as exc:
                raise TransientStageFailure(f"{name} analysis unreachable: {exc.__class__.__name__}") from exc
            if _is_transient_status(response.status_code):
                raise TransientStageFailure(f"{name} analysis responded with HTTP {response.status_code}")
            if response.status_code >= 400:
                raise FatalStageFailure(f"{name} analysis rejected the request (HTTP {response.status_code})")
            results[name] = response.json()

    return StageOutcome.ok({"analyses": results})
