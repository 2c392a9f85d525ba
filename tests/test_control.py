from __future__ import annotations

import json

import httpx
import pytest

from pagerelay.control import ControlClient
from pagerelay.errors import SubmitError, TransportError, TransportTimeout
from pagerelay.schemas import SubmitContent, SubmitPayload


def _client(handler) -> ControlClient:
    transport = httpx.MockTransport(handler)
    return ControlClient("http://control.test/", client=httpx.AsyncClient(transport=transport), poll_timeout=5)


def _payload() -> SubmitPayload:
    return SubmitPayload(
        url="https://example.com",
        transformed_url="https://example.com/",
        content=SubmitContent(
            raw_html="<p>x</p>",
            raw_purified_content="<p>x</p>",
            readable_content="x",
            title="Example",
            screenshot=None,
        ),
    )


@pytest.mark.asyncio()
async def test_fetch_job_returns_none_on_204() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(204)

    client = _client(handler)
    assert await client.fetch_job() is None
    assert seen == ["http://control.test/get_url"]


@pytest.mark.asyncio()
async def test_fetch_job_parses_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(200, json={"url": "https://example.com/a", "capture_screenshot": False, "extra": 1})

    job = await _client(handler).fetch_job()

    assert job is not None
    assert job.url == "https://example.com/a"
    assert job.capture_screenshot is False


@pytest.mark.asyncio()
async def test_fetch_job_defaults_to_screenshot_mode() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(200, json={"url": "https://example.com/a"})

    job = await _client(handler).fetch_job()

    assert job is not None and job.capture_screenshot is True


@pytest.mark.asyncio()
async def test_fetch_job_maps_server_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(500, text="oops")

    with pytest.raises(TransportError, match="status: 500"):
        await _client(handler).fetch_job()


@pytest.mark.asyncio()
async def test_fetch_job_rejects_malformed_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(TransportError, match="Malformed"):
        await _client(handler).fetch_job()


@pytest.mark.asyncio()
@pytest.mark.parametrize("body", [{}, {"url": ""}, {"url": "   "}, {"url": None, "capture_screenshot": True}])
async def test_fetch_job_without_url_is_an_empty_queue(body: dict) -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(200, json=body)

    assert await _client(handler).fetch_job() is None


@pytest.mark.asyncio()
async def test_fetch_job_null_screenshot_flag_means_text_only() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(200, json={"url": " https://example.com/a ", "capture_screenshot": None})

    job = await _client(handler).fetch_job()

    assert job is not None
    assert job.url == "https://example.com/a"
    assert job.capture_screenshot is False


@pytest.mark.asyncio()
async def test_fetch_job_distinguishes_timeouts_from_failures() -> None:
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def connect_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportTimeout):
        await _client(timeout_handler).fetch_job()
    with pytest.raises(TransportError):
        await _client(connect_handler).fetch_job()


@pytest.mark.asyncio()
async def test_submit_posts_camel_case_body() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/submit"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, text="ok")

    await _client(handler).submit(_payload())

    body = bodies[0]
    assert body["url"] == "https://example.com"
    assert body["transformedUrl"] == "https://example.com/"
    assert set(body["content"]) == {"rawHtml", "rawPurifiedContent", "readableContent", "title", "screenshot"}
    assert body["content"]["screenshot"] is None


@pytest.mark.asyncio()
async def test_submit_rejection_raises_with_preview() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(413, text="x" * 500)

    with pytest.raises(SubmitError) as excinfo:
        await _client(handler).submit(_payload())

    assert excinfo.value.status_code == 413
    assert str(excinfo.value) == "Server responded with 413: " + "x" * 100


@pytest.mark.asyncio()
async def test_submit_transport_failure_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(SubmitError):
        await _client(handler).submit(_payload())


@pytest.mark.asyncio()
async def test_report_error_posts_report_and_never_raises() -> None:
    bodies: list[dict] = []

    def ok(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def rejected(request: httpx.Request) -> httpx.Response:  # noqa: ARG001
        return httpx.Response(503)

    assert await _client(ok).report_error("https://example.com", "boom") is True
    assert bodies[0]["url"] == "https://example.com"
    assert bodies[0]["error"] == "boom"
    assert bodies[0]["timestamp"].endswith("+00:00")

    assert await _client(broken).report_error("https://example.com", "boom") is False
    assert await _client(rejected).report_error("https://example.com", "boom") is False
