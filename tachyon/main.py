import asyncio
import hashlib
import logging
import math
import mimetypes
import re
import secrets
import stat
import time
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Callable

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool

from . import __version__
from .auth import (
    PKCE_COOKIE,
    SESSION_COOKIE,
    STATE_COOKIE,
    SessionCodec,
    UrlSigner,
    cover_key,
    page_key,
)
from .config import Settings, load_settings
from .errors import UpstreamError
from .gate import INVALID_CAPABILITY, UNCONFIGURED, Access, AccessGate
from .library import ComicIndex, list_pages, page_file, resolve_comic_dir
from .oidc import (
    authorization_url,
    code_challenge,
    exchange_code,
    fetch_userinfo,
    new_code_verifier,
    new_state,
)
from .signing import Signer
from .watcher import FolderWatcher, apply_events

APP_ROOT = Path(__file__).resolve().parent
TEMPLATES = Jinja2Templates(directory=str(APP_ROOT / "templates"))

IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"
NO_CACHE = "no-cache, no-store, must-revalidate"
DEFAULT_LIMIT = 36
MAX_LIMIT = 500
HANDSHAKE_MAX_AGE = 600

_PAGE_RE = re.compile(r"[0-9]{1,20}")

mimetypes.add_type("image/webp", ".webp")
mimetypes.add_type("image/avif", ".avif")
mimetypes.add_type("image/bmp", ".bmp")

logger = logging.getLogger(__name__)
router = APIRouter()


def create_app(settings: Settings | None = None, clock: Callable[[], float] = time.time) -> FastAPI:
    """Build the application; every piece of state hangs off app.state."""
    settings = settings or load_settings()
    signer = Signer(settings.secret_key)
    sessions = SessionCodec(signer, ttl=settings.session_ttl, clock=clock)
    urls = UrlSigner(signer, ttl=settings.signed_url_ttl, clock=clock)
    index = ComicIndex(settings.comics_dir, urls)
    gate = AccessGate(sessions, urls, settings.auth_mode)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if gate.mode == UNCONFIGURED:
            logger.error(
                "OIDC_CLIENT_ID is not set and AUTH_DISABLED is not true; "
                "comic routes will refuse to serve"
            )
        elif gate.mode == "disabled":
            logger.warning("Authentication disabled by AUTH_DISABLED; comic routes are public")

        watcher = None
        queue: asyncio.Queue = asyncio.Queue()
        if settings.watch_enabled:
            watcher = FolderWatcher(
                settings.comics_dir,
                queue,
                interval=settings.watch_interval,
                stability=settings.watch_stability,
            )
            await run_in_threadpool(watcher.prime)

        start = time.perf_counter()
        await run_in_threadpool(index.full_scan)
        logger.info(
            "Initial scan complete: %d comics in %dms",
            len(index),
            int((time.perf_counter() - start) * 1000),
        )

        tasks = []
        if watcher is not None:
            tasks.append(asyncio.create_task(watcher.run()))
            tasks.append(asyncio.create_task(apply_events(queue, index)))
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError):
                    await task

    app = FastAPI(title="Tachyon", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.sessions = sessions
    app.state.urls = urls
    app.state.index = index
    app.state.gate = gate

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _cache_headers(request: Request, call_next):
        response = await call_next(request)
        path = request.url.path
        if (path.startswith("/api/") or path == "/health") and "cache-control" not in response.headers:
            response.headers["Cache-Control"] = NO_CACHE
        return response

    app.mount("/static", StaticFiles(directory=str(APP_ROOT / "static")), name="static")
    app.include_router(router)
    return app


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _index(request: Request) -> ComicIndex:
    return request.app.state.index


def _urls(request: Request) -> UrlSigner:
    return request.app.state.urls


def _gate(request: Request) -> AccessGate:
    return request.app.state.gate


def _deny(access: Access) -> None:
    if access.reason == UNCONFIGURED:
        raise HTTPException(status_code=503, detail="Authentication is not configured")
    if access.reason == INVALID_CAPABILITY:
        raise HTTPException(status_code=403, detail="Invalid or expired signature")
    raise HTTPException(status_code=401, detail="Unauthorized")


def _require_session(request: Request) -> Access:
    access = _gate(request).decide(request.cookies.get(SESSION_COOKIE))
    if not access.granted:
        _deny(access)
    return access


def _require_image_access(request: Request, resource_key: str) -> Access:
    access = _gate(request).decide(
        request.cookies.get(SESSION_COOKIE),
        resource_key=resource_key,
        expires=request.query_params.get("expires"),
        signature=request.query_params.get("sig"),
    )
    if not access.granted:
        _deny(access)
    return access


def _comic_folder(request: Request, comic_id: str) -> Path:
    folder = resolve_comic_dir(_index(request).comics_root, comic_id)
    if folder is None:
        raise HTTPException(status_code=404, detail="Comic not found")
    return folder


def _etag(path: Path, st) -> str:
    raw = f"{path}-{st.st_size}-{st.st_mtime_ns}".encode("utf-8", "surrogateescape")
    return f'"{hashlib.sha1(raw).hexdigest()}"'


def _etag_matches(if_none_match: str | None, etag: str) -> bool:
    if not if_none_match:
        return False
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


def _image_response(request: Request, path: Path) -> Response:
    try:
        st = path.stat()
    except OSError:
        raise HTTPException(status_code=404, detail="File not found")
    if not stat.S_ISREG(st.st_mode):
        raise HTTPException(status_code=404, detail="File not found")

    etag = _etag(path, st)
    headers = {"ETag": etag, "Cache-Control": IMAGE_CACHE_CONTROL}
    if _etag_matches(request.headers.get("if-none-match"), etag):
        return Response(status_code=304, headers=headers)

    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return FileResponse(str(path), media_type=media_type, headers=headers, stat_result=st)


def _set_cookie(response: Response, settings: Settings, key: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key,
        value,
        max_age=max_age,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="none" if settings.cookie_domain else "lax",
    )


def _clear_cookie(response: Response, settings: Settings, key: str) -> None:
    response.delete_cookie(
        key,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="none" if settings.cookie_domain else "lax",
    )


def _render(request: Request, template_name: str, context: dict, status_code: int = 200):
    context = dict(context)
    access = getattr(request.state, "access", None)
    context["current_user"] = access.session if access else None
    context["auth_enabled"] = _gate(request).auth_enabled
    context["app_version"] = __version__
    return TEMPLATES.TemplateResponse(request, template_name, context, status_code=status_code)


@router.get("/health")
def health(request: Request):
    return {
        "status": "ok",
        "timestamp": int(time.time() * 1000),
        "authEnabled": _gate(request).auth_enabled,
        "comics": len(_index(request)),
    }


@router.get("/api/config")
def api_config(request: Request):
    return {"authEnabled": _gate(request).auth_enabled}


@router.get("/api/comics")
def list_comics(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
):
    _require_session(request)
    comics, total = _index(request).get_page(page, limit)
    return {
        "count": total,
        "total": total,
        "comics": [c.to_dict() for c in comics],
        "page": page,
        "totalPages": math.ceil(total / limit),
    }


@router.get("/api/comics/{comic_id}")
def get_comic(request: Request, comic_id: str):
    _require_session(request)
    folder = _comic_folder(request, comic_id)
    pages = list_pages(folder)
    if not pages:
        raise HTTPException(status_code=404, detail="Comic not found")
    return {"id": comic_id, "name": folder.name, "pageCount": len(pages)}


@router.get("/api/comics/{comic_id}/cover")
def get_cover(request: Request, comic_id: str):
    _require_image_access(request, cover_key(comic_id))
    folder = _comic_folder(request, comic_id)
    pages = list_pages(folder)
    if not pages:
        raise HTTPException(status_code=404, detail="No cover found")
    return _image_response(request, page_file(folder, pages[0]))


@router.get("/api/comics/{comic_id}/pages")
def get_pages(request: Request, comic_id: str):
    _require_session(request)
    folder = _comic_folder(request, comic_id)
    pages = list_pages(folder)
    if not pages:
        raise HTTPException(status_code=404, detail="Comic not found")
    urls = _urls(request)
    return {
        "id": comic_id,
        "name": folder.name,
        "pageCount": len(pages),
        "pages": [
            {"index": p.index, "filename": p.filename, "url": urls.page_url(comic_id, p.index)}
            for p in pages
        ],
    }


@router.get("/api/comics/{comic_id}/pages/{page}")
def get_page_image(request: Request, comic_id: str, page: str):
    if not _PAGE_RE.fullmatch(page):
        raise HTTPException(status_code=400, detail="Invalid page index")
    page_index = int(page)
    _require_image_access(request, page_key(comic_id, page_index))
    folder = _comic_folder(request, comic_id)
    pages = list_pages(folder)
    if page_index >= len(pages):
        raise HTTPException(status_code=404, detail="Page not found")
    return _image_response(request, page_file(folder, pages[page_index]))


@router.get("/api/auth/login")
def login(request: Request):
    settings = _settings(request)
    if not settings.oidc.configured:
        raise HTTPException(status_code=500, detail="OIDC not configured")
    state = new_state()
    verifier = new_code_verifier()
    response = RedirectResponse(
        url=authorization_url(settings.oidc, state, code_challenge(verifier)),
        status_code=302,
    )
    _set_cookie(response, settings, STATE_COOKIE, state, HANDSHAKE_MAX_AGE)
    _set_cookie(response, settings, PKCE_COOKIE, verifier, HANDSHAKE_MAX_AGE)
    return response


def _callback_error(settings: Settings, status_code: int, detail: str) -> JSONResponse:
    response = JSONResponse({"detail": detail}, status_code=status_code)
    _clear_cookie(response, settings, STATE_COOKIE)
    _clear_cookie(response, settings, PKCE_COOKIE)
    return response


@router.get("/api/auth/callback")
def callback(request: Request, code: str | None = None, state: str | None = None):
    settings = _settings(request)
    stored_state = request.cookies.get(STATE_COOKIE)
    verifier = request.cookies.get(PKCE_COOKIE) or ""

    if not settings.oidc.configured:
        return _callback_error(settings, 500, "OIDC not configured")
    if not state or not stored_state or not secrets.compare_digest(
        state.encode("utf-8"), stored_state.encode("utf-8")
    ):
        return _callback_error(settings, 400, "Invalid state")
    if not code:
        return _callback_error(settings, 400, "No code provided")

    try:
        tokens = exchange_code(settings.oidc, code, verifier)
        userinfo = fetch_userinfo(settings.oidc, tokens["access_token"])
    except UpstreamError as exc:
        logger.warning("OIDC login failed: %s", exc)
        return _callback_error(settings, 500, "Authentication failed")

    sessions: SessionCodec = request.app.state.sessions
    session = sessions.new_session(userinfo)
    logger.info("User %s signed in", session.user_id)

    response = RedirectResponse(url=settings.app_url, status_code=302)
    _clear_cookie(response, settings, STATE_COOKIE)
    _clear_cookie(response, settings, PKCE_COOKIE)
    _set_cookie(response, settings, SESSION_COOKIE, sessions.issue(session), settings.session_ttl)
    return response


@router.post("/api/auth/logout")
def logout(request: Request):
    response = JSONResponse({"success": True})
    _clear_cookie(response, _settings(request), SESSION_COOKIE)
    return response


@router.get("/api/auth/me")
def me(request: Request):
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return {"user": None}
    session = request.app.state.sessions.redeem(token)
    if session is None:
        response = JSONResponse({"user": None})
        _clear_cookie(response, _settings(request), SESSION_COOKIE)
        return response
    return {"user": session.public()}


def _reader_access(request: Request):
    access = _gate(request).decide(request.cookies.get(SESSION_COOKIE))
    request.state.access = access
    if access.granted:
        return None
    status_code = 503 if access.reason == UNCONFIGURED else 401
    return _render(
        request,
        "login.html",
        {"unconfigured": access.reason == UNCONFIGURED},
        status_code=status_code,
    )


@router.get("/", response_class=HTMLResponse)
def library_page(request: Request, page: int = Query(1, ge=1)):
    denied = _reader_access(request)
    if denied is not None:
        return denied
    comics, total = _index(request).get_page(page, DEFAULT_LIMIT)
    total_pages = max(1, math.ceil(total / DEFAULT_LIMIT))
    return _render(
        request,
        "library.html",
        {
            "comics": comics,
            "total": total,
            "page": page,
            "total_pages": total_pages,
            "prev_url": f"/?page={page - 1}" if page > 1 else None,
            "next_url": f"/?page={page + 1}" if page < total_pages else None,
        },
    )


@router.get("/read/{comic_id}", response_class=HTMLResponse)
def reader_page(request: Request, comic_id: str):
    denied = _reader_access(request)
    if denied is not None:
        return denied
    folder = _comic_folder(request, comic_id)
    pages = list_pages(folder)
    if not pages:
        raise HTTPException(status_code=404, detail="Comic not found")
    urls = _urls(request)
    return _render(
        request,
        "reader.html",
        {
            "comic_id": comic_id,
            "name": folder.name,
            "page_urls": [urls.page_url(comic_id, p.index) for p in pages],
        },
    )
