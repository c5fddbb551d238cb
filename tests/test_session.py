from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from pricetrack.antibot import CHROME_120_WINDOWS, BrowserSession
from pricetrack.antibot.session import WARMUP_PAUSE
from pricetrack.errors import TransportError, UpstreamStatusError

API_URL = "https://api.digikala.com/v2/product/1/"


def _session(handler, **kwargs):
    kwargs.setdefault("min_delay", 1.0)
    kwargs.setdefault("max_delay", 1.0)
    return BrowserSession(transport=httpx.MockTransport(handler), **kwargs)


def test_warmup_cookie_is_sent_with_api_requests(no_sleep):
    seen = []

    def handler(request):
        seen.append(request)
        if request.url.host == "www.digikala.com":
            return httpx.Response(200, headers={"set-cookie": "tracker=abc; Domain=.digikala.com; Path=/"}, text="<html>")
        return httpx.Response(200, text='{"status": 200}')

    session = _session(handler)
    body = session.get(API_URL)

    assert body == '{"status": 200}'
    assert seen[0].url == "https://www.digikala.com/"
    assert seen[0].headers["sec-fetch-mode"] == "navigate"
    assert "tracker=abc" in seen[1].headers["cookie"]
    assert session.requests_sent == 1
    assert no_sleep == [WARMUP_PAUSE, 1.0]


def test_headers_are_sent_in_browser_order(no_sleep):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, text="{}")

    session = _session(handler, warmup=False)
    session.get(API_URL)

    names = list(seen[0].headers.keys())
    expected = ["host"] + [name for name, _ in CHROME_120_WINDOWS.api_headers()]
    assert names == expected
    assert seen[0].headers["user-agent"] == CHROME_120_WINDOWS.user_agent


def test_pause_stays_within_bounds(no_sleep):
    session = _session(lambda request: httpx.Response(200, text="{}"), warmup=False, min_delay=1.0, max_delay=3.0)
    for _ in range(5):
        session.get(API_URL)
    assert len(no_sleep) == 5
    assert all(1.0 <= delay <= 3.0 for delay in no_sleep)


def test_non_success_status_raises(no_sleep):
    session = _session(lambda request: httpx.Response(403, text="denied"), warmup=False)
    with pytest.raises(UpstreamStatusError) as excinfo:
        session.get(API_URL)
    assert excinfo.value.status == 403
    assert "unexpected status code: 403" in str(excinfo.value)


def test_transport_failure_raises(no_sleep):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    session = _session(handler, warmup=False)
    with pytest.raises(TransportError):
        session.get(API_URL)
    assert session.requests_sent == 1


def test_request_counter_is_exact_across_threads(no_sleep):
    def handler(request):
        if request.url.path.endswith("/3/"):
            return httpx.Response(500, text="boom")
        return httpx.Response(200, text="{}")

    session = _session(handler, warmup=False)
    urls = [f"https://api.digikala.com/v2/product/{n % 5}/" for n in range(200)]

    def fetch(url):
        try:
            session.get(url)
        except UpstreamStatusError:
            pass

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(fetch, urls))

    assert session.requests_sent == len(urls)


def test_redirects_are_followed(no_sleep):
    def handler(request):
        if request.url.path == "/v2/product/1/":
            return httpx.Response(301, headers={"location": "https://api.digikala.com/v2/product/2/"})
        return httpx.Response(200, text="moved")

    session = _session(handler, warmup=False)
    assert session.get(API_URL) == "moved"


def test_warmup_failure_is_not_fatal(no_sleep):
    def handler(request):
        if request.url.host == "www.digikala.com":
            raise httpx.ConnectError("reset", request=request)
        return httpx.Response(200, text="ok")

    with _session(handler) as session:
        assert session.get(API_URL) == "ok"
    assert no_sleep == [1.0]


def test_invalid_delay_bounds_rejected():
    with pytest.raises(ValueError):
        BrowserSession(min_delay=3.0, max_delay=1.0, warmup=False)
