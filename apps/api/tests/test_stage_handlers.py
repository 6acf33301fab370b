import json
from unittest.mock import patch

import httpx
import pytest

from services.pipeline_errors import FatalStageFailure, TransientStageFailure
from services.pipeline_state import Stage
from services.stage_handlers import analyze_site, crawl_site, load_stage_handlers


def _never_cancelled():
    return False


def _transport(status_by_url):
    def handler(request: httpx.Request) -> httpx.Response:
        status = status_by_url.get(str(request.url), 200)
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status, headers={"content-type": "text/html"}, text="<html></html>")

    return httpx.MockTransport(handler)


def test_configured_handlers_resolve_to_reference_collaborators():
    handlers = load_stage_handlers()
    assert handlers[Stage.CRAWL] is crawl_site
    assert handlers[Stage.ANALYZE] is analyze_site


@pytest.mark.asyncio
async def test_crawl_fetches_base_and_custom_urls():
    config = {"base_url": "https://site.test/", "custom_urls": ["https://site.test/about", "https://site.test/"]}

    outcome = await crawl_site("p1", config, _never_cancelled, transport=_transport({}))

    assert outcome.success
    assert [page["url"] for page in outcome.result["pages"]] == ["https://site.test/", "https://site.test/about"]
    assert all(page["status_code"] == 200 for page in outcome.result["pages"])


@pytest.mark.asyncio
async def test_crawl_respects_max_pages():
    config = {"base_url": "https://site.test/", "custom_urls": ["https://site.test/a", "https://site.test/b"], "max_pages": 2}

    outcome = await crawl_site("p1", config, _never_cancelled, transport=_transport({}))

    assert len(outcome.result["pages"]) == 2


@pytest.mark.asyncio
async def test_crawl_server_errors_on_base_url_are_transient():
    transport = _transport({"https://site.test/": 503})
    with pytest.raises(TransientStageFailure):
        await crawl_site("p1", {"base_url": "https://site.test/"}, _never_cancelled, transport=transport)


@pytest.mark.asyncio
async def test_crawl_unreachable_base_url_is_transient():
    transport = _transport({"https://site.test/": httpx.ConnectError("refused")})
    with pytest.raises(TransientStageFailure):
        await crawl_site("p1", {"base_url": "https://site.test/"}, _never_cancelled, transport=transport)


@pytest.mark.asyncio
async def test_crawl_client_errors_and_bad_targets_are_fatal():
    with pytest.raises(FatalStageFailure):
        await crawl_site("p1", {"base_url": "https://site.test/"}, _never_cancelled, transport=_transport({"https://site.test/": 404}))
    with pytest.raises(FatalStageFailure):
        await crawl_site("p1", {"base_url": "not a url"}, _never_cancelled)
    with pytest.raises(FatalStageFailure):
        await crawl_site("p1", {}, _never_cancelled)


@pytest.mark.asyncio
async def test_crawl_stops_at_next_checkpoint_when_cancelled():
    checks = []

    def cancelled_after_first_page():
        checks.append(1)
        return len(checks) > 1

    config = {"base_url": "https://site.test/", "custom_urls": ["https://site.test/a", "https://site.test/b"]}
    outcome = await crawl_site("p1", config, cancelled_after_first_page, transport=_transport({}))

    assert not outcome.success
    assert outcome.error_message == "cancelled"
    assert len(checks) == 2


@pytest.mark.asyncio
async def test_analyze_skips_when_no_analysis_service_configured():
    with patch("services.stage_handlers.settings.ANALYSIS_SERVICE_URL", ""):
        outcome = await analyze_site("p1", {"analyses": ["seo"]}, _never_cancelled)

    assert outcome.success
    assert outcome.result == {"analyses": {"seo": "skipped"}}


@pytest.mark.asyncio
async def test_analyze_posts_each_selected_analysis():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"score": 90})

    with patch("services.stage_handlers.settings.ANALYSIS_SERVICE_URL", "https://analysis.test/v1/"):
        outcome = await analyze_site(
            "p1", {"analyses": ["seo", "content"]}, _never_cancelled, transport=httpx.MockTransport(handler)
        )

    assert seen == ["/v1/seo", "/v1/content"]
    assert outcome.result == {"analyses": {"seo": {"score": 90}, "content": {"score": 90}}}


@pytest.mark.asyncio
async def test_analyze_rate_limit_is_transient_and_rejection_is_fatal():
    with patch("services.stage_handlers.settings.ANALYSIS_SERVICE_URL", "https://analysis.test"):
        with pytest.raises(TransientStageFailure):
            await analyze_site(
                "p1", {"analyses": ["seo"]}, _never_cancelled,
                transport=httpx.MockTransport(lambda request: httpx.Response(429)),
            )
        with pytest.raises(FatalStageFailure):
            await analyze_site(
                "p1", {"analyses": ["seo"]}, _never_cancelled,
                transport=httpx.MockTransport(lambda request: httpx.Response(422)),
            )


class _RecordingToken:
    """Async-aware cancellation token like the one workers hand to collaborators."""

    def __init__(self):
        self.polls = 0
        self.progress = []

    def __call__(self):
        raise AssertionError("async collaborators must await poll()")

    async def poll(self, force=False):
        self.polls += 1
        return False

    async def report_progress(self, pages_crawled, total_pages):
        self.progress.append((pages_crawled, total_pages))


@pytest.mark.asyncio
async def test_crawl_awaits_token_poll_and_reports_progress():
    token = _RecordingToken()
    config = {"base_url": "https://site.test/", "custom_urls": ["https://site.test/a", "https://site.test/b"]}

    outcome = await crawl_site("p1", config, token, transport=_transport({}))

    assert outcome.success
    assert token.polls == 3
    assert token.progress == [(1, 3), (2, 3), (3, 3)]


@pytest.mark.asyncio
async def test_analyze_sends_crawled_pages_without_echoing_them_in_config():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"score": 75})

    config = {"analyses": ["seo"], "crawl_result": {"pages": [{"url": "https://site.test/"}]}}
    with patch("services.stage_handlers.settings.ANALYSIS_SERVICE_URL", "https://analysis.test/v1"):
        outcome = await analyze_site("p1", config, _RecordingToken(), transport=httpx.MockTransport(handler))

    assert outcome.result == {"analyses": {"seo": {"score": 75}}}
    assert bodies == [{"unit_id": "p1", "config": {"analyses": ["seo"]}, "pages": [{"url": "https://site.test/"}]}]
