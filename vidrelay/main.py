"""
Video relay FastAPI application.

Flow: POST /generate stores slug → origin URL, GET /play/{slug}?t=<secret>
swaps the one-time token for a session cookie, and GET /stream/{slug}
relays the origin bytes with Range support.
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

import httpx
import uvicorn
from fastapi import APIRouter, Cookie, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from vidrelay.auth import (
    AccessController,
    bearer_token,
    name_from_url,
    slugify,
    validate_slug,
)
from vidrelay.config import Settings, load_settings, setup_logging
from vidrelay.models import DeleteResponse, GenerateRequest, GenerateResponse
from vidrelay.registry import LinkNotFound, LinkRegistry
from vidrelay.relay import RelayError, StreamRelay
from vidrelay.store import build_store

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Range",
}

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_registry(request: Request) -> LinkRegistry:
    return request.app.state.registry


def get_access(request: Request) -> AccessController:
    return request.app.state.access


def get_relay(request: Request) -> StreamRelay:
    return request.app.state.relay


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------

@router.get("/", response_class=HTMLResponse)
async def root(request: Request):
    return templates.TemplateResponse(request, "index.html", {})


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@router.get("/health")
async def health(request: Request):
    try:
        await request.app.state.store.ping()
        return {"status": "ok"}
    except Exception:
        raise HTTPException(status_code=503, detail="Store unavailable")


# ---------------------------------------------------------------------------
# Link generation
# ---------------------------------------------------------------------------

@router.post("/generate")
async def generate(
    request: Request,
    body: GenerateRequest,
    registry: LinkRegistry = Depends(get_registry),
    access: AccessController = Depends(get_access),
):
    settings: Settings = request.app.state.settings

    if body.token is not None or settings.generate_requires_token:
        if not access.check_token(body.token):
            logger.warning("Rejected generate request: bad token")
            raise HTTPException(status_code=401, detail="Invalid or missing token.")

    name = body.name if body.name and body.name.strip() else name_from_url(body.url)
    slug = slugify(name)
    if not validate_slug(slug):
        raise HTTPException(status_code=400, detail=f"Invalid name: '{name}'")

    await registry.create(slug, body.url)

    base = settings.public_base_url or str(request.base_url).rstrip("/")
    playback_url = f"{base}/play/{quote(slug)}"
    if body.token:
        playback_url += "?" + urlencode({"t": body.token})

    return JSONResponse(
        GenerateResponse(playback_url=playback_url, slug=slug).model_dump(by_alias=True)
    )


# ---------------------------------------------------------------------------
# Play: one-time token → session cookie
# ---------------------------------------------------------------------------

@router.get("/play/{slug}")
async def play(
    slug: str,
    t: Optional[str] = None,
    access: AccessController = Depends(get_access),
):
    if not access.check_token(t):
        logger.warning("Rejected play token for %s", slug)
        raise HTTPException(status_code=401, detail="Invalid or missing token.")

    response = RedirectResponse(url=f"/stream/{quote(slug)}", status_code=302)
    access.issue_session(response, t)
    return response


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------

@router.options("/stream")
@router.options("/stream/{slug}")
async def stream_preflight():
    return Response(status_code=204, headers=CORS_PREFLIGHT_HEADERS)


@router.get("/stream")
async def stream_direct(
    request: Request,
    token: Optional[str] = None,
    video_url: Optional[str] = Query(default=None, alias="videoUrl"),
    access: AccessController = Depends(get_access),
    relay: StreamRelay = Depends(get_relay),
):
    """Relay an unregistered URL. Needs the user secret in the query."""
    if not access.check_token(token):
        raise HTTPException(status_code=401, detail="Invalid or missing token.")
    if not video_url or not video_url.startswith("http"):
        raise HTTPException(status_code=400, detail="'videoUrl' parameter is required.")

    return await relay.open(video_url, request.headers.get("range"))


@router.get("/stream/{slug}")
async def stream(
    request: Request,
    slug: str,
    token: Optional[str] = None,
    auth_token: Optional[str] = Cookie(default=None, alias="auth-token"),
    registry: LinkRegistry = Depends(get_registry),
    access: AccessController = Depends(get_access),
    relay: StreamRelay = Depends(get_relay),
):
    if auth_token is None and token is None:
        raise HTTPException(status_code=401, detail="Missing session.")
    if not (access.check_session(auth_token) or access.check_token(token)):
        logger.warning("Rejected stream session for %s", slug)
        raise HTTPException(status_code=403, detail="Invalid session.")

    try:
        origin_url = await registry.resolve(slug)
    except LinkNotFound:
        raise HTTPException(status_code=404, detail="Video not found.")

    range_header = request.headers.get("range")
    logger.info("Relaying %s (range=%s)", slug, range_header or "-")
    return await relay.open(origin_url, range_header)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@router.get("/admin", response_class=HTMLResponse)
async def admin(
    request: Request,
    token: Optional[str] = None,
    registry: LinkRegistry = Depends(get_registry),
    access: AccessController = Depends(get_access),
):
    if not access.check_admin(token):
        logger.warning("Rejected admin panel access")
        raise HTTPException(status_code=403, detail="Invalid admin token.")

    entries = await registry.list_all()
    return templates.TemplateResponse(request, "admin.html", {"entries": entries})


@router.delete("/delete/{slug}")
async def delete_link(
    slug: str,
    authorization: Optional[str] = Header(default=None),
    registry: LinkRegistry = Depends(get_registry),
    access: AccessController = Depends(get_access),
):
    if not access.check_admin(bearer_token(authorization)):
        raise HTTPException(status_code=401, detail="Unauthorized.")

    try:
        await registry.delete(slug)
    except LinkNotFound as exc:
        return JSONResponse(
            status_code=400,
            content=DeleteResponse(success=False, error=str(exc)).model_dump(exclude_none=True),
        )
    return DeleteResponse(success=True).model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

async def relay_error_handler(request: Request, exc: RelayError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = "; ".join(str(err.get("msg", "invalid")) for err in exc.errors())
    return JSONResponse(status_code=400, content={"detail": f"Invalid request: {messages}"})


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error."})


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    store=None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the application. Missing pieces are created from settings."""
    if settings is None:
        settings = load_settings()
    if store is None:
        store = build_store(settings.store_backend, settings.redis_url)

    owns_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(
                settings.upstream_read_timeout,
                connect=settings.upstream_connect_timeout,
            ),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.connect()
        yield
        if owns_client:
            await http_client.aclose()
        await store.close()

    app = FastAPI(title="Video Relay", lifespan=lifespan)

    app.state.settings = settings
    app.state.store = store
    app.state.registry = LinkRegistry(store)
    app.state.access = AccessController(
        settings.user_secrets,
        settings.admin_secrets,
        settings.cookie_max_age,
    )
    app.state.relay = StreamRelay(http_client, settings.max_concurrent_streams)

    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    app.include_router(router)
    return app


def run() -> None:
    setup_logging()
    uvicorn.run(
        "vidrelay.main:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
