import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from visitor_filter.core import Decision, FilterConfig, VisitorFilter
from visitor_filter.geo import DEFAULT_DB_PATH, GeoIPCountryLookup
from visitor_filter.visitor import ResponseCookieStore, VisitorMarker, signals_from_request

APP_ROOT = Path(__file__).resolve().parent.parent
CONFIG_PATH = Path(os.getenv("VF_CONFIG_PATH", APP_ROOT / "rules" / "filter_config.json"))
LOG_PATH = Path(os.getenv("VF_LOG_PATH", APP_ROOT / "logs" / "events.jsonl"))

BACKEND_BASE = os.getenv("VF_BACKEND_BASE", "http://127.0.0.1:5000")
DENY_REDIRECT = os.getenv("VF_DENY_REDIRECT") or None

logger = logging.getLogger(__name__)

stats = {
    "blocked": 0,
    "allowed": 0,
    "by_reason": {},
    "by_country": {},
}


def load_config(path: Path = CONFIG_PATH) -> FilterConfig:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return FilterConfig.from_mapping(data)


def build_filter(config_path: Path = CONFIG_PATH, db_path: str = DEFAULT_DB_PATH) -> VisitorFilter:
    config = load_config(config_path)
    geo = None
    if config.disallowed_countries and not config.allow_to_all:
        # raises GeoDatabaseError, which aborts startup
        geo = GeoIPCountryLookup(db_path)
    logger.info("Visitor filter loaded from %s (geo=%s)", config_path, "on" if geo else "off")
    return VisitorFilter(config, geo)


def log_event(event: dict):
    LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    with open(LOG_PATH, "a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False) + "\n")


def bump_stats(decision: Decision):
    if decision.allowed:
        stats["allowed"] += 1
    else:
        stats["blocked"] += 1

    for reason in decision.reasons:
        stats["by_reason"][reason] = stats["by_reason"].get(reason, 0) + 1

    country = decision.context.country_iso_code
    if country:
        stats["by_country"][country] = stats["by_country"].get(country, 0) + 1


# httpx has already decoded the body; these describe the upstream framing
HOP_HEADERS = {"content-encoding", "content-length", "transfer-encoding", "connection", "keep-alive"}


async def forward_to_backend(
    backend_base: str,
    request: Request,
    body: bytes,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Response:
    url = f"{backend_base}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"

    headers = dict(request.headers)
    headers.pop("host", None)

    async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
        resp = await client.request(
            method=request.method,
            url=url,
            headers=headers,
            content=body,
        )

    headers = {
        k: v for k, v in resp.headers.items()
        if k not in HOP_HEADERS and k != "set-cookie"
    }
    response = Response(
        content=resp.content,
        status_code=resp.status_code,
        headers=headers,
        media_type=resp.headers.get("content-type"),
    )
    for cookie in resp.headers.get_list("set-cookie"):
        response.raw_headers.append((b"set-cookie", cookie.encode("latin-1")))
    return response


def create_app(
    visitor_filter: Optional[VisitorFilter] = None,
    backend_base: str = BACKEND_BASE,
    deny_redirect: Optional[str] = DENY_REDIRECT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.visitor_filter is None
        if owned:
            app.state.visitor_filter = build_filter()
        yield
        if owned and app.state.visitor_filter.geo is not None:
            app.state.visitor_filter.geo.close()

    app = FastAPI(title="Visitor Filter Gate", lifespan=lifespan)
    app.state.visitor_filter = visitor_filter

    @app.get("/admin/stats")
    def admin_stats():
        return stats

    @app.api_route("/{full_path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    async def visitor_gate(full_path: str, request: Request):
        request_id = str(uuid.uuid4())
        ts = time.time()

        cookies = ResponseCookieStore(request.cookies)
        marker = VisitorMarker(cookies)
        decision = app.state.visitor_filter.decide(signals_from_request(request), marker)
        ctx = decision.context

        log_event({
            "timestamp": ts,
            "request_id": request_id,
            "client_ip": ctx.ip or (request.client.host if request.client else None),
            "country": ctx.country_iso_code,
            "language": ctx.language,
            "referer": ctx.http_referer,
            "method": request.method,
            "path": str(request.url.path),
            "action": "ALLOW" if decision.allowed else "DENY",
            "reasons": decision.reasons,
        })
        bump_stats(decision)

        if not decision.allowed:
            if deny_redirect:
                return cookies.apply(RedirectResponse(deny_redirect, status_code=302))
            return cookies.apply(JSONResponse(
                status_code=403,
                content={
                    "allowed": False,
                    "request_id": request_id,
                    "reasons": decision.reasons,
                },
            ))

        body = await request.body()
        try:
            response = await forward_to_backend(backend_base, request, body, transport)
        except httpx.HTTPError as e:
            logger.warning("Upstream %s failed: %s", backend_base, e)
            response = JSONResponse(status_code=502, content={"error": "upstream unavailable", "request_id": request_id})
        return cookies.apply(response)

    return app


app = create_app()
