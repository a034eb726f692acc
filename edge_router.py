#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from flask import Flask, Response, current_app, g, jsonify, make_response, render_template, request
from werkzeug.exceptions import InternalServerError, MethodNotAllowed, NotFound
from werkzeug.middleware.proxy_fix import ProxyFix

from upstreams import (
    DEFAULT_CF_TRACE_URL, DEFAULT_IPAPI_URL, MissingParameter, RequestsUpstreamClient,
    UpstreamClient, UpstreamError, build_upstreams, proxy_upstream,
)

logger = logging.getLogger(__name__)

# ----------------------------- Base paths -----------------------------
BASE_DIR = Path(__file__).resolve().parent
SERVICE_VERSION = "2026-10-18.r1"
SERVER_HEADER = "ip-edge-router"
EXTENSION_KEY = "edge_router"

PAGE_CSP = ("default-src 'self'; script-src 'self' 'unsafe-inline'; "
            "style-src 'self' 'unsafe-inline'; connect-src 'self'")
PREFLIGHT_MAX_AGE = "86400"

# ----------------------------- Route table -----------------------------
METHOD_ORDER = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


@dataclass(frozen=True)
class Route:
    path: str
    methods: Tuple[str, ...]
    kind: str
    upstream: Optional[str] = None

    @property
    def allow(self) -> str:
        return ", ".join(m for m in METHOD_ORDER if m in self.methods)


ROUTES: Tuple[Route, ...] = (
    Route("/", ("GET", "OPTIONS"), "page"),
    Route("/api/ipapi", ("GET", "OPTIONS"), "upstream", upstream="ipapi"),
    Route("/api/cf-trace", ("GET", "OPTIONS"), "upstream", upstream="cf-trace"),
    Route("/healthz", ("GET", "HEAD", "OPTIONS"), "health"),
)
ROUTES_BY_PATH: Dict[str, Route] = {r.path: r for r in ROUTES}

# ----------------------------- Errors -----------------------------

class ApiError(Exception):
    status_code = 500
    message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        if message:
            self.message = message
        super().__init__(self.message)
        self.headers = headers or {}


class MethodNotAllowedError(ApiError):
    status_code = 405
    message = "Method Not Allowed"

    def __init__(self, route: Route):
        super().__init__(headers={"Allow": route.allow})
        self.route = route


class MissingParameterError(ApiError):
    status_code = 400

    def __init__(self, param: str):
        super().__init__(f"Missing query parameter: {param}")


class BadGatewayError(ApiError):
    status_code = 502
    message = "Upstream request failed"


def _json_error(status: int, message: str, headers: Optional[Mapping[str, str]] = None) -> Response:
    resp = make_response(jsonify({"error": message}), status)
    for k, v in (headers or {}).items():
        resp.headers[k] = v
    return resp

# ----------------------------- CORS policy -----------------------------

def self_origin(req) -> str:
    return f"{req.scheme}://{req.host}"


def cors_headers(req, route: Optional[Route] = None) -> Dict[str, str]:
    """Allow-origin is always the request's own origin; ``Origin`` is never reflected."""
    headers = {"Access-Control-Allow-Origin": self_origin(req)}
    if route is not None:
        headers["Access-Control-Allow-Methods"] = route.allow
        headers["Access-Control-Allow-Headers"] = "Content-Type"
    return headers

# ----------------------------- Method guard -----------------------------

def check_method(route: Route, method: str) -> str:
    """Return ``"preflight"`` or ``"allowed"``; raise MethodNotAllowedError otherwise."""
    method = method.upper()
    if method == "OPTIONS":
        return "preflight"
    if method not in route.methods:
        raise MethodNotAllowedError(route)
    return "allowed"


def preflight_response(route: Route) -> Response:
    resp = make_response("", 204)
    resp.headers["Allow"] = route.allow
    resp.headers["Access-Control-Max-Age"] = PREFLIGHT_MAX_AGE
    return resp

# ----------------------------- Handlers -----------------------------

def _state() -> Dict[str, Any]:
    return current_app.extensions[EXTENSION_KEY]


def proxy_route(route: Route) -> Response:
    state = _state()
    upstream = state["upstreams"][route.upstream]
    timeout = float(current_app.config["UPSTREAM_TIMEOUT"])
    try:
        result = proxy_upstream(state["client"], upstream, request.args, timeout)
    except MissingParameter as exc:
        raise MissingParameterError(exc.param) from exc
    except UpstreamError as exc:
        raise BadGatewayError() from exc
    return Response(result.body, status=result.status, content_type=result.content_type)


def render_page() -> Response:
    resp = make_response(render_template("index.html", service_version=SERVICE_VERSION))
    resp.headers["Content-Security-Policy"] = PAGE_CSP
    return resp


def dispatch(route: Route) -> Response:
    if check_method(route, request.method) == "preflight":
        return preflight_response(route)
    if route.kind == "upstream":
        return proxy_route(route)
    if route.kind == "page":
        return render_page()
    return Response("ok", mimetype="text/plain")


def _view_for(route: Route):
    def view():
        return dispatch(route)
    return view


def _request_id() -> str:
    inbound = request.headers.get("X-Request-Id")
    return inbound or str(uuid.uuid4())

# ----------------------------- Factory -----------------------------

def _env_config() -> Dict[str, Any]:
    return {
        "IPAPI_URL": os.getenv("IPAPI_URL", DEFAULT_IPAPI_URL),
        "CF_TRACE_URL": os.getenv("CF_TRACE_URL", DEFAULT_CF_TRACE_URL),
        "UPSTREAM_TIMEOUT": float(os.getenv("UPSTREAM_TIMEOUT", "10") or "10"),
        "TRUSTED_HOPS": int(os.getenv("TRUSTED_HOPS", "0") or "0"),
    }


def create_app(upstream_client: Optional[UpstreamClient] = None,
               config: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__, template_folder=str(BASE_DIR / "templates"), static_folder=None)
    app.config.update(_env_config())
    if config:
        app.config.update(config)

    app.extensions[EXTENSION_KEY] = {
        "client": upstream_client or RequestsUpstreamClient(),
        "upstreams": build_upstreams(app.config),
    }

    all_methods = list(METHOD_ORDER)
    for route in ROUTES:
        app.add_url_rule(route.path, f"route:{route.path}", _view_for(route),
                         methods=all_methods, provide_automatic_options=False)

    hops = int(app.config["TRUSTED_HOPS"])
    if hops > 0:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops, x_host=hops)

    @app.before_request
    def _assign_request_id():
        g.request_id = _request_id()

    @app.after_request
    def _harden(resp: Response) -> Response:
        route = ROUTES_BY_PATH.get(request.path)
        for k, v in cors_headers(request, route).items():
            resp.headers[k] = v
        resp.headers["X-Request-Id"] = g.get("request_id") or _request_id()
        resp.headers["Server"] = SERVER_HEADER
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    @app.errorhandler(ApiError)
    def _api_error(exc: ApiError):
        if isinstance(exc, MethodNotAllowedError):
            logger.debug("rejected %s %s", request.method, request.path)
        return _json_error(exc.status_code, exc.message, exc.headers)

    @app.errorhandler(MethodNotAllowed)
    def _werkzeug_405(exc):
        route = ROUTES_BY_PATH.get(request.path)
        allow = route.allow if route else ", ".join(exc.valid_methods or [])
        return _json_error(405, MethodNotAllowedError.message, {"Allow": allow})

    @app.errorhandler(NotFound)
    def _not_found(exc):
        return _json_error(404, "Not Found")

    @app.errorhandler(InternalServerError)
    def _internal_error(exc):
        return _json_error(500, "Internal Server Error")

    return app


app = create_app()

if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.environ.get("PORT", "8080"))
    app.run(host="0.0.0.0", port=port)
