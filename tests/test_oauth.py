"""Tests for tidio_oauth: port selection, callback listener and the connect flow."""

import asyncio
import json
import socket
import threading
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from settings import Settings
from tidio_api import TidioClient
from tidio_oauth import (
    NO_TOKEN_MESSAGE,
    TIMEOUT_MESSAGE,
    OAuthFlow,
    OAuthFlowError,
    OAuthResult,
    Outcome,
    find_available_port,
)
from tidio_storage import CredentialStore


class FakeBrowser:
    def __init__(self):
        self.urls = []

    def __call__(self, url):
        self.urls.append(url)
        return True


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def tidio_api(request: httpx.Request):
    if request.url.path == "/platforms/oauth/access_token":
        return httpx.Response(200, json={"access_token": "at-new", "refresh_token": "rt-new"})
    if request.url.path == "/platforms/wordpress/integrate":
        return httpx.Response(200, json={"projectPublicKey": "abc123XYZ9"})
    return httpx.Response(404)


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        TIDIO_API_URL="https://api.test",
        TIDIO_CALLBACK_PORT=free_port(),
        TIDIO_CALLBACK_TIMEOUT=10.0,
        TIDIO_CREDENTIALS_PATH=tmp_path / "credentials.json",
    )


def make_flow(cfg, browser, handler=tidio_api):
    store = CredentialStore(cfg.TIDIO_CREDENTIALS_PATH)
    client = TidioClient(cfg, transport=httpx.MockTransport(handler))
    return OAuthFlow(cfg, store=store, client=client, open_browser=browser)


async def wait_for_callback_url(browser) -> str:
    for _ in range(500):
        if browser.urls:
            return parse_qs(urlparse(browser.urls[0]).query)["pluginUrl"][0]
        await asyncio.sleep(0.01)
    raise AssertionError("browser was never opened")


async def get(url):
    async with httpx.AsyncClient(trust_env=False) as client:
        return await client.get(url)


# ── Port selection ──────────────────────────────────────────


def test_find_available_port_skips_busy_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        taken = busy.getsockname()[1]

        sock = find_available_port("127.0.0.1", taken)
        try:
            assert sock.getsockname()[1] > taken
        finally:
            sock.close()


def test_find_available_port_exhausted():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        taken = busy.getsockname()[1]

        with pytest.raises(OAuthFlowError, match="No available ports found"):
            find_available_port("127.0.0.1", taken, taken)


# ── URLs ──────────────────────────────────────────


def test_callback_url_is_query_qualified(cfg):
    flow = make_flow(cfg, FakeBrowser())
    assert flow.callback_url(4000) == "http://localhost:4000/callback?source=mcp"


def test_public_callback_url(cfg):
    cfg = cfg.model_copy(update={"TIDIO_PUBLIC_CALLBACK_URL": "https://tunnel.example/"})
    flow = make_flow(cfg, FakeBrowser())
    assert flow.callback_url(4000) == "https://tunnel.example/callback?source=mcp"


def test_auth_url_parameters(cfg):
    flow = make_flow(cfg, FakeBrowser())
    url = urlparse(flow.auth_url("http://localhost:4000/callback?source=mcp", "https://example.com"))

    assert f"{url.scheme}://{url.netloc}{url.path}" == "https://www.tidio.com/panel/register-platforms"
    params = parse_qs(url.query)
    assert params == {
        "pluginUrl": ["http://localhost:4000/callback?source=mcp"],
        "siteUrl": ["https://example.com"],
        "localeCode": ["en_US"],
        "language": ["en"],
        "utm_source": ["platform"],
        "utm_medium": ["wordpress"],
    }


# ── Flow ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_successful_callback_saves_credentials(cfg):
    browser = FakeBrowser()
    flow = make_flow(cfg, browser)
    task = asyncio.create_task(flow.run("https://example.com"))

    callback = await wait_for_callback_url(browser)
    assert urlparse(callback).port == cfg.TIDIO_CALLBACK_PORT

    resp = await get(callback + "&refreshToken=rt-old")
    assert resp.status_code == 200
    assert "Tidio Connected" in resp.text

    result = await asyncio.wait_for(task, 5)
    assert result.success
    assert result.credentials["public_key"] == "abc123XYZ9"
    assert result.credentials["site_url"] == "https://example.com"

    saved = flow.store.load()
    assert saved["public_key"] == "abc123XYZ9"
    assert saved["access_token"] == "at-new"
    assert saved["refresh_token"] == "rt-new"

    with pytest.raises(httpx.ConnectError):
        await get(callback)


@pytest.mark.asyncio
async def test_callback_without_token_fails_and_closes(cfg):
    browser = FakeBrowser()
    flow = make_flow(cfg, browser)
    task = asyncio.create_task(flow.run("https://example.com"))

    callback = await wait_for_callback_url(browser)
    resp = await get(callback)
    assert resp.status_code == 400
    assert "No refresh token received" in resp.text

    result = await asyncio.wait_for(task, 5)
    assert not result.success
    assert NO_TOKEN_MESSAGE in result.error
    assert flow.store.load() is None

    with pytest.raises(httpx.ConnectError):
        await get(callback)


@pytest.mark.asyncio
async def test_api_failure_is_reported(cfg):
    def failing_api(request):
        return httpx.Response(403, json={"error": "forbidden"})

    browser = FakeBrowser()
    flow = make_flow(cfg, browser, handler=failing_api)
    task = asyncio.create_task(flow.run("https://example.com"))

    callback = await wait_for_callback_url(browser)
    resp = await get(callback + "&refreshToken=rt")
    assert resp.status_code == 500
    assert "Failed to exchange refresh token: 403" in resp.text

    result = await asyncio.wait_for(task, 5)
    assert not result.success
    assert result.error == "Failed to exchange refresh token: 403"
    assert flow.store.load() is None


@pytest.mark.asyncio
async def test_unknown_path_keeps_listener_open(cfg):
    browser = FakeBrowser()
    flow = make_flow(cfg, browser)
    task = asyncio.create_task(flow.run("https://example.com"))

    callback = urlparse(await wait_for_callback_url(browser))
    base = f"{callback.scheme}://{callback.netloc}"

    resp = await get(f"{base}/favicon.ico")
    assert resp.status_code == 404
    assert resp.headers["content-type"].startswith("text/plain")
    assert not task.done()

    resp = await get(f"{base}/")
    assert resp.status_code == 200
    assert "Waiting for Tidio" in resp.text

    await get(f"{base}/callback?source=mcp")
    result = await asyncio.wait_for(task, 5)
    assert not result.success


@pytest.mark.asyncio
async def test_busy_default_port_moves_to_next(cfg):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", cfg.TIDIO_CALLBACK_PORT))
        busy.listen()

        browser = FakeBrowser()
        flow = make_flow(cfg.model_copy(update={"TIDIO_CALLBACK_TIMEOUT": 0.2}), browser)
        result = await asyncio.wait_for(flow.run("https://example.com"), 5)

    assert not result.success
    port = urlparse(parse_qs(urlparse(browser.urls[0]).query)["pluginUrl"][0]).port
    assert port > cfg.TIDIO_CALLBACK_PORT


@pytest.mark.asyncio
async def test_timeout_fails_and_closes(cfg):
    browser = FakeBrowser()
    flow = make_flow(cfg.model_copy(update={"TIDIO_CALLBACK_TIMEOUT": 0.2}), browser)

    result = await asyncio.wait_for(flow.run("https://example.com"), 5)
    assert not result.success
    assert result.error == TIMEOUT_MESSAGE

    callback = parse_qs(urlparse(browser.urls[0]).query)["pluginUrl"][0]
    with pytest.raises(httpx.ConnectError):
        await get(callback)


@pytest.mark.asyncio
async def test_browser_error_fails_flow(cfg):
    def broken_browser(url):
        raise RuntimeError("no display available")

    flow = make_flow(cfg, broken_browser)
    result = await asyncio.wait_for(flow.run("https://example.com"), 5)

    assert not result.success
    assert result.error == "no display available"
    # listener was released, so the port is free again
    sock = find_available_port("127.0.0.1", cfg.TIDIO_CALLBACK_PORT, cfg.TIDIO_CALLBACK_PORT)
    sock.close()


# ── Settlement ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_outcome_settles_once():
    outcome = Outcome()
    first = OAuthResult(success=True, credentials={"public_key": "abc123XYZ9"})

    assert outcome.settle(first) is True
    assert outcome.settle(OAuthResult(success=False, error=TIMEOUT_MESSAGE)) is False
    assert outcome.settled
    assert await outcome.wait() is first


@pytest.mark.asyncio
async def test_callback_settles_on_loop_thread_in_debug_mode(cfg, monkeypatch):
    loop = asyncio.get_running_loop()
    threads = []
    original_settle = Outcome.settle

    def recording_settle(self, result):
        threads.append(threading.current_thread())
        return original_settle(self, result)

    monkeypatch.setattr(Outcome, "settle", recording_settle)
    loop.set_debug(True)
    try:
        browser = FakeBrowser()
        flow = make_flow(cfg.model_copy(update={"TIDIO_CALLBACK_TIMEOUT": 3.0}), browser)
        task = asyncio.create_task(flow.run("https://example.com"))

        callback = await wait_for_callback_url(browser)
        resp = await get(callback + "&refreshToken=rt-old")
        assert resp.status_code == 200

        result = await asyncio.wait_for(task, 5)
    finally:
        loop.set_debug(False)

    assert result.success
    assert result.credentials["public_key"] == "abc123XYZ9"
    assert threads == [threading.main_thread()]


@pytest.mark.asyncio
async def test_second_callback_is_rejected(cfg):
    exchanges = []

    async def slow_api(request: httpx.Request):
        if request.url.path == "/platforms/oauth/access_token":
            exchanges.append(request)
            await asyncio.sleep(0.3)
        return tidio_api(request)

    browser = FakeBrowser()
    flow = make_flow(cfg, browser, handler=slow_api)
    task = asyncio.create_task(flow.run("https://example.com"))

    callback = await wait_for_callback_url(browser)
    first = asyncio.create_task(get(callback + "&refreshToken=rt-1"))
    await asyncio.sleep(0.1)

    second = await get(callback + "&refreshToken=rt-2")
    assert second.status_code == 409
    assert "already finished" in second.text

    assert (await first).status_code == 200
    result = await asyncio.wait_for(task, 5)
    assert result.success
    assert len(exchanges) == 1
    assert json.loads(exchanges[0].content)["refresh_token"] == "rt-1"


# ── Tunnels ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_ngrok_skip_warning_header_is_echoed(cfg):
    browser = FakeBrowser()
    flow = make_flow(cfg, browser)
    task = asyncio.create_task(flow.run("https://example.com"))

    callback = urlparse(await wait_for_callback_url(browser))
    base = f"{callback.scheme}://{callback.netloc}"

    async with httpx.AsyncClient(trust_env=False) as client:
        tunnelled = await client.get(f"{base}/", headers={"ngrok-skip-browser-warning": "1"})
        direct = await client.get(f"{base}/")
    assert tunnelled.headers["ngrok-skip-browser-warning"] == "true"
    assert "ngrok-skip-browser-warning" not in direct.headers

    resp = await get(f"{base}/callback?source=mcp")
    assert resp.status_code == 400
    await asyncio.wait_for(task, 5)
