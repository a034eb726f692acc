# -*- coding: utf-8 -*-
"""Upstream descriptors and the HTTP client the router proxies through."""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote, urlencode

import requests

logger = logging.getLogger(__name__)

DEFAULT_IPAPI_URL = "https://api.ipapi.is/"
DEFAULT_CF_TRACE_URL = "https://www.cloudflare.com/cdn-cgi/trace"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
USER_AGENT = "ip-edge-router"

# ----------------------------- Errors -----------------------------

class UpstreamError(Exception):
    """The upstream could not be reached (DNS, connect, timeout, bad URL)."""

    def __init__(self, target: str, detail: str = ""):
        super().__init__(f"{target}: {detail}" if detail else target)
        self.target = target
        self.detail = detail


class MissingParameter(ValueError):
    def __init__(self, param: str):
        super().__init__(param)
        self.param = param

# ----------------------------- Types -----------------------------

@dataclass(frozen=True)
class UpstreamResponse:
    status: int
    content_type: str
    body: bytes


@dataclass(frozen=True)
class Upstream:
    name: str
    url: str
    param: Optional[str] = None

    def build_url(self, args: Mapping[str, str]) -> str:
        """Return the outbound URL, with the caller's ``param`` value percent-encoded."""
        if not self.param:
            return self.url
        value = (args.get(self.param) or "").strip()
        if not value:
            raise MissingParameter(self.param)
        sep = "&" if "?" in self.url else "?"
        return self.url + sep + urlencode({self.param: value}, quote_via=quote)


def build_upstreams(config: Mapping[str, Any]) -> Dict[str, Upstream]:
    return {
        "ipapi": Upstream("ipapi", config.get("IPAPI_URL") or DEFAULT_IPAPI_URL, param="q"),
        "cf-trace": Upstream("cf-trace", config.get("CF_TRACE_URL") or DEFAULT_CF_TRACE_URL),
    }

# ----------------------------- Clients -----------------------------

class UpstreamClient:
    """Capability the router uses for outbound calls. Subclass and override ``get``."""

    def get(self, url: str, timeout: float) -> UpstreamResponse:  # pragma: no cover
        raise NotImplementedError


class RequestsUpstreamClient(UpstreamClient):
    def __init__(self, session: Optional[requests.Session] = None):
        if session is None:
            session = requests.Session()
            session.headers["User-Agent"] = USER_AGENT
        self.session = session

    def get(self, url: str, timeout: float) -> UpstreamResponse:
        try:
            r = self.session.get(url, timeout=timeout, allow_redirects=True)
        except requests.RequestException as exc:
            raise UpstreamError(url, str(exc)) from exc
        return UpstreamResponse(
            status=r.status_code,
            content_type=r.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE,
            body=r.content,
        )

# ----------------------------- Proxy -----------------------------

def proxy_upstream(client: UpstreamClient, upstream: Upstream, args: Mapping[str, str],
                   timeout: float) -> UpstreamResponse:
    """One outbound GET; non-2xx statuses are returned, not raised."""
    url = upstream.build_url(args)
    logger.debug("upstream %s -> GET %s", upstream.name, url)
    try:
        result = client.get(url, timeout)
    except UpstreamError as exc:
        logger.warning("upstream %s failed: %s", upstream.name, exc)
        raise
    if result.status >= 400:
        logger.info("upstream %s answered %d, relaying", upstream.name, result.status)
    return result
