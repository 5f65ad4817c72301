import asyncio

import aiohttp
import pytest

from simquery.workflows.errors import RateLimited, RemoteRejected, SessionInvalid, Timeout, Unavailable
from simquery.workflows.http_fetch import HttpFetcher, HttpResponse
from simquery.workflows.session import Session

from fakes import ICCID, crm_page, make_config

SESSION = Session(tokens=("JSESSIONID=A1B2C3D4E5F6A7B8C9D0",), acquired_at=0.0)


def _fetcher(monkeypatch, steps, **config_overrides):
    sleeps = []
    requests = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    async def fake_request_once(self, url, headers):
        requests.append((url, headers))
        step = steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step

    monkeypatch.setattr(HttpFetcher, "_request_once", fake_request_once, raising=False)
    fetcher = HttpFetcher(make_config(**config_overrides), sleep=fake_sleep)
    return fetcher, sleeps, requests


def test_fetch_decodes_big5_and_sends_cookie(monkeypatch):
    body = crm_page(location="香港").encode("big5")
    fetcher, sleeps, requests = _fetcher(monkeypatch, [HttpResponse(status=200, body=body)])

    document = asyncio.run(fetcher.fetch(ICCID, SESSION))

    assert "香港" in document.html
    assert document.method == "http"
    assert document.url == f"http://crm.test:8080/crm/prepaid_enquiry_action_load.jsp?dat={ICCID}"
    url, headers = requests[0]
    assert headers["Cookie"] == "JSESSIONID=A1B2C3D4E5F6A7B8C9D0"
    assert sleeps == []


def test_rate_limit_honours_retry_after(monkeypatch):
    steps = [
        HttpResponse(status=429, body=b"", retry_after="5"),
        HttpResponse(status=200, body=crm_page().encode("utf-8")),
    ]
    fetcher, sleeps, _ = _fetcher(monkeypatch, steps)

    asyncio.run(fetcher.fetch(ICCID, SESSION))

    assert sleeps == [5.0]


def test_rate_limit_exhaustion_raises_rate_limited(monkeypatch):
    steps = [HttpResponse(status=429, body=b"") for _ in range(3)]
    fetcher, sleeps, requests = _fetcher(monkeypatch, steps)

    with pytest.raises(RateLimited):
        asyncio.run(fetcher.fetch(ICCID, SESSION))

    assert sleeps == [2.0, 4.0]
    assert len(requests) == 3


def test_timeouts_back_off_then_raise_timeout(monkeypatch):
    steps = [asyncio.TimeoutError(), asyncio.TimeoutError(), asyncio.TimeoutError()]
    fetcher, sleeps, _ = _fetcher(monkeypatch, steps)

    with pytest.raises(Timeout):
        asyncio.run(fetcher.fetch(ICCID, SESSION))

    assert sleeps == [0.8, 1.6]


def test_transport_error_recovers_on_retry(monkeypatch):
    steps = [
        aiohttp.ClientConnectionError("reset"),
        HttpResponse(status=200, body=crm_page().encode("utf-8")),
    ]
    fetcher, sleeps, _ = _fetcher(monkeypatch, steps)

    document = asyncio.run(fetcher.fetch(ICCID, SESSION))

    assert document.status == 200
    assert sleeps == [0.8]


def test_transport_error_exhaustion_is_unavailable(monkeypatch):
    steps = [aiohttp.ClientConnectionError("Server disconnected")] * 3
    fetcher, _, _ = _fetcher(monkeypatch, steps)

    with pytest.raises(Unavailable):
        asyncio.run(fetcher.fetch(ICCID, SESSION))


def test_non_200_is_remote_rejected_without_retry(monkeypatch):
    fetcher, sleeps, requests = _fetcher(monkeypatch, [HttpResponse(status=500, body=b"String index out of range")])

    with pytest.raises(RemoteRejected) as excinfo:
        asyncio.run(fetcher.fetch(ICCID, SESSION))

    assert "500" in str(excinfo.value)
    assert len(requests) == 1
    assert sleeps == []


def test_login_prompt_signals_session_invalid(monkeypatch):
    body = "<html><body>請登錄系統</body></html>".encode("big5")
    fetcher, _, _ = _fetcher(monkeypatch, [HttpResponse(status=200, body=body)])

    with pytest.raises(SessionInvalid):
        asyncio.run(fetcher.fetch(ICCID, SESSION))


def test_close_without_session_is_noop():
    fetcher = HttpFetcher(make_config())

    asyncio.run(fetcher.close())


def test_login_prompt_served_as_utf8_signals_session_invalid(monkeypatch):
    body = "<html><body>請登錄系統</body></html>".encode("utf-8")
    fetcher, _, _ = _fetcher(monkeypatch, [HttpResponse(status=200, body=body, charset="utf-8")])

    with pytest.raises(SessionInvalid):
        asyncio.run(fetcher.fetch(ICCID, SESSION))


def test_retry_after_is_capped(monkeypatch):
    steps = [
        HttpResponse(status=429, body=b"", retry_after="3600"),
        HttpResponse(status=200, body=crm_page().encode("utf-8")),
    ]
    fetcher, sleeps, _ = _fetcher(monkeypatch, steps, retry_after_max=30.0)

    asyncio.run(fetcher.fetch(ICCID, SESSION))

    assert sleeps == [30.0]
