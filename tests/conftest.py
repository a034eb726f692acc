from __future__ import annotations

from typing import List, Optional

import pytest

from edge_router import create_app
from upstreams import UpstreamClient, UpstreamError, UpstreamResponse


class FakeUpstreamClient(UpstreamClient):
    """Records every outbound URL and answers with a canned response or error."""

    def __init__(self):
        self.calls: List[str] = []
        self.response = UpstreamResponse(200, "application/json", b'{"ip": "1.1.1.1"}')
        self.error: Optional[Exception] = None

    def reply(self, status: int, body: bytes, content_type: str = "application/json") -> None:
        self.response = UpstreamResponse(status, content_type, body)

    def get(self, url: str, timeout: float) -> UpstreamResponse:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def fake_upstream():
    return FakeUpstreamClient()


@pytest.fixture
def app(fake_upstream):
    app = create_app(upstream_client=fake_upstream, config={
        "IPAPI_URL": "https://ipapi.test/",
        "CF_TRACE_URL": "https://trace.test/cdn-cgi/trace",
        "TRUSTED_HOPS": 0,
    })
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def transport_failure(fake_upstream):
    fake_upstream.error = UpstreamError("https://ipapi.test/?q=1.1.1.1", "Name or service not known")
    return fake_upstream
