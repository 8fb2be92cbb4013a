"""
ClawChat public (browser-facing) server.

  1. Event stream at /api/events (SSE fan-out from the in-process bus)
  2. Message history, editing, deletion and forget-from
  3. Widget HTTP surface: app state, app actions, error and log sinks
  4. Agent proxies (/api/stop, /api/agent/*)
  5. Invite / session auth with a `session` cookie
  6. File uploads (/api/upload, /chat-public) and prompt editing (/api/prompts)
"""
import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import httpx
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, RedirectResponse, StreamingResponse
from pydantic import BaseModel

from clawchat.bus import Subscription
from clawchat.config import (
    HOST, PORT, APPS_DIR, APP_NAME, AUTH_ENABLED, VERSION, CHAT_PUBLIC_DIR, PROMPTS_DIR, UPLOAD_MAX_BYTES,
    SSE_HEARTBEAT_INTERVAL, SSE_RECONNECT_DELAY, MESSAGE_PAGE_SIZE,
    AGENT_PROXY_TIMEOUT, AGENT_STOP_TIMEOUT, SESSION_TTL_DAYS,
)
from clawchat.db import crud
from clawchat.db.database import get_db, close_db
from clawchat.db.models import Attachment, Session, message_to_dict, app_state_to_dict, DEFAULT_CONVERSATION
from clawchat.files import list_prompts, read_prompt, save_upload, shared_file, write_prompt
from clawchat.services import ChatServices, get_services, valid_app_id
from clawchat.web import ApiError, install_error_handlers, configure_logging
from clawchat.widget.parser import extract_widgets
from clawchat.widget.wrapper import FULLSCREEN, wrap_widget_html

logger = logging.getLogger("clawchat")

SESSION_COOKIE = "session"
AGENT_INFO_ENDPOINTS = ("health", "state", "memory")
_WIDGET_PATH_RE = re.compile(r"[\w\-/]+")


# ─────────────────────────────────────────────
# Auth
# ─────────────────────────────────────────────

async def current_session(request: Request) -> Optional[Session]:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    db = await get_db()
    return await crud.session_get(db, token)


async def require_session(request: Request, session: Optional[Session] = Depends(current_session)):
    if request.app.state.auth_enabled and session is None:
        raise ApiError(401, "Unauthorized")
    return session


public = APIRouter()
api = APIRouter(dependencies=[Depends(require_session)])


@public.get("/api/health")
async def api_health():
    return {"status": "ok", "api": "public", "version": VERSION}


@public.get("/api/auth/invite")
async def api_auth_invite(token: Optional[str] = None):
    if not token:
        raise ApiError(400, "Token required")
    db = await get_db()
    session = await crud.invite_redeem(db, token)
    res = RedirectResponse("/", status_code=302)
    res.set_cookie(
        SESSION_COOKIE, session.token,
        max_age=SESSION_TTL_DAYS * 24 * 60 * 60,
        httponly=True, samesite="lax",
    )
    return res


@public.get("/api/auth/me")
async def api_auth_me(request: Request, session: Optional[Session] = Depends(current_session)):
    if session is not None or not request.app.state.auth_enabled:
        return {"authenticated": True}
    return JSONResponse({"authenticated": False}, status_code=401)


@public.post("/api/auth/logout")
async def api_auth_logout(request: Request):
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        db = await get_db()
        await crud.session_delete(db, token)
    res = JSONResponse({"ok": True})
    res.delete_cookie(SESSION_COOKIE)
    return res


@public.get("/invite", response_class=HTMLResponse)
async def invite_page(token: Optional[str] = None, session: Optional[Session] = Depends(current_session)):
    if session is not None:
        return RedirectResponse("/", status_code=302)
    if token:
        return RedirectResponse(f"/api/auth/invite?token={quote(token)}", status_code=302)
    return HTMLResponse(f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Join {APP_NAME}</title>
</head>
<body>
  <h1>{APP_NAME}</h1>
  <p>This chat is invite-only. Enter your invite token below.</p>
  <form action="/invite" method="get">
    <input type="text" name="token" placeholder="Invite token" required autofocus />
    <button type="submit">Join</button>
  </form>
</body>
</html>""", headers={"Cache-Control": "no-store"})


# ─────────────────────────────────────────────
# Event stream
# ─────────────────────────────────────────────

async def event_stream(sub: Subscription):
    """Frames for one SSE connection; the subscription is released when the client goes away."""
    try:
        yield f"retry: {int(SSE_RECONNECT_DELAY * 1000)}\n\n"
        async for frame in sub.frames():
            yield frame
    finally:
        sub.close()


@api.get("/api/events")
async def api_events(services: ChatServices = Depends(get_services)):
    sub = services.bus.subscribe()
    services.monitor.probe_subscriber(sub)
    return StreamingResponse(
        event_stream(sub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ─────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────

class AttachmentIn(BaseModel):
    filename: str
    mimetype: str
    size: int


class MessageCreate(BaseModel):
    content: Optional[str] = None
    conversationId: Optional[str] = None
    attachment: Optional[AttachmentIn] = None


class MessageEdit(BaseModel):
    content: Optional[str] = None


class ForgetFrom(BaseModel):
    messageId: Optional[str] = None


@api.get("/api/messages")
async def api_messages(before: Optional[str] = None, around: Optional[str] = None, limit: int = MESSAGE_PAGE_SIZE):
    db = await get_db()
    msgs, has_more = await crud.msg_page(db, before=before, around=around, limit=limit)
    return {"messages": [message_to_dict(m) for m in msgs], "hasMore": has_more}


@api.post("/api/messages")
async def api_post_message(body: MessageCreate, services: ChatServices = Depends(get_services)):
    content = body.content or ""
    if not content.strip() and body.attachment is None:
        raise ApiError(400, "Content required")
    attachment = Attachment(**body.attachment.model_dump()) if body.attachment else None
    db = await get_db()
    msg = await services.post_user_message(db, content, body.conversationId, attachment=attachment)
    return message_to_dict(msg)


@api.patch("/api/messages/{message_id}")
async def api_edit_message(message_id: str, body: MessageEdit, services: ChatServices = Depends(get_services)):
    if body.content is None:
        raise ApiError(400, "Content required")
    db = await get_db()
    msg = await services.edit_message(db, message_id, body.content)
    return message_to_dict(msg)


@api.delete("/api/messages/{message_id}")
async def api_delete_message(message_id: str, services: ChatServices = Depends(get_services)):
    db = await get_db()
    await services.delete_message(db, message_id)
    return {"ok": True}


@api.post("/api/forget/from")
async def api_forget_from(body: ForgetFrom, services: ChatServices = Depends(get_services)):
    if not body.messageId:
        raise ApiError(400, "messageId required")
    db = await get_db()
    ids = await services.forget_from(db, body.messageId)
    return {"ok": True, "deleted": ids}


# ─────────────────────────────────────────────
# Uploads and shared files
# ─────────────────────────────────────────────

@api.post("/api/upload")
async def api_upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    content: str = Form(""),
    conversationId: Optional[str] = Form(None),
    services: ChatServices = Depends(get_services),
):
    """Send a message with an attached file (multipart/form-data)."""
    if file is None and not content.strip():
        raise ApiError(400, "File or content required")
    attachment, path = None, None
    if file is not None:
        attachment, path = await save_upload(
            Path(request.app.state.chat_public_dir), file, request.app.state.upload_max_bytes,
        )
    db = await get_db()
    msg = await services.post_user_message(
        db, content, conversationId, attachment=attachment,
        attachment_path=str(path) if path else None,
    )
    return message_to_dict(msg)


@api.get("/chat-public/{path:path}")
async def chat_public_file(path: str, request: Request):
    target = shared_file(Path(request.app.state.chat_public_dir), path)
    if target is None:
        raise ApiError(404, "Not found")
    return FileResponse(target)


# ─────────────────────────────────────────────
# Prompts
# ─────────────────────────────────────────────

class PromptWrite(BaseModel):
    content: Any = None


@api.get("/api/prompts")
async def api_prompts(request: Request):
    return list_prompts(Path(request.app.state.prompts_dir))


@api.get("/api/prompts/{name}")
async def api_prompt(name: str, request: Request):
    content = read_prompt(Path(request.app.state.prompts_dir), name)
    return {"name": name, "content": content}


@api.put("/api/prompts/{name}")
async def api_save_prompt(name: str, body: PromptWrite, request: Request):
    if not isinstance(body.content, str):
        raise ApiError(400, "Content required")
    try:
        write_prompt(Path(request.app.state.prompts_dir), name, body.content)
    except OSError as e:
        logger.error(f"[Prompts] Failed to save {name}: {e}")
        raise ApiError(500, "Failed to save prompt")
    return {"ok": True}


# ─────────────────────────────────────────────
# Agent proxies
# ─────────────────────────────────────────────

def _relay(res: httpx.Response) -> JSONResponse:
    try:
        data = res.json()
    except ValueError:
        data = {}
    return JSONResponse(data, status_code=res.status_code)


@api.post("/api/stop")
async def api_stop(services: ChatServices = Depends(get_services)):
    try:
        res = await services.monitor.request("POST", "/stop", timeout=AGENT_STOP_TIMEOUT)
    except httpx.HTTPError as e:
        logger.warning(f"Stop proxy failed: {e}")
        raise ApiError(502, "Agent unreachable")
    return _relay(res)


@api.get("/api/agent/status")
async def api_agent_status(services: ChatServices = Depends(get_services)):
    return services.monitor.status.to_dict()


@api.get("/api/agent/{endpoint}")
async def api_agent_info(endpoint: str, services: ChatServices = Depends(get_services)):
    if endpoint not in AGENT_INFO_ENDPOINTS:
        raise ApiError(404, "Not found")
    try:
        res = await services.monitor.request("GET", f"/info/{endpoint}", timeout=AGENT_PROXY_TIMEOUT)
    except httpx.HTTPError:
        raise ApiError(502, "Agent unreachable")
    return _relay(res)


# ─────────────────────────────────────────────
# Widget HTTP surface
# ─────────────────────────────────────────────

class AppStateWrite(BaseModel):
    state: Any = None
    version: Optional[int] = None


class AppActionCall(BaseModel):
    action: Any = None
    payload: Any = None


class WidgetErrorReport(BaseModel):
    error: Any = None
    stack: Any = None
    appId: Any = None


class WidgetLogLine(BaseModel):
    widgetPath: Any = None
    line: Optional[int] = None
    data: Any = None


def _check_app_id(app_id: str) -> None:
    if not valid_app_id(app_id):
        raise ApiError(400, "Invalid appId")


@api.get("/api/app-state/{conversation_id}/{app_id}")
async def api_get_app_state(conversation_id: str, app_id: str):
    _check_app_id(app_id)
    db = await get_db()
    record = await crud.app_state_get(db, conversation_id, app_id)
    if record is None:
        raise ApiError(404, "Not found")
    return app_state_to_dict(record)


@api.post("/api/app-state/{conversation_id}/{app_id}")
async def api_set_app_state(conversation_id: str, app_id: str, body: AppStateWrite,
                            services: ChatServices = Depends(get_services)):
    _check_app_id(app_id)
    if "state" not in body.model_fields_set:
        raise ApiError(400, "State required")
    db = await get_db()
    record = await services.set_app_state(db, conversation_id, app_id, body.state, body.version)
    return app_state_to_dict(record)


@api.post("/api/app-action/{conversation_id}/{app_id}")
async def api_app_action(conversation_id: str, app_id: str, body: AppActionCall,
                         services: ChatServices = Depends(get_services)):
    if not valid_app_id(app_id):
        return JSONResponse({"ok": False, "error": "Invalid appId"}, status_code=400)
    if not body.action or not isinstance(body.action, str):
        return JSONResponse({"ok": False, "error": "action must be a non-empty string"}, status_code=400)
    return await services.app_action(conversation_id, app_id, body.action, body.payload)


@api.post("/api/widget-error/{conversation_id}")
async def api_widget_error(conversation_id: str, body: WidgetErrorReport,
                           services: ChatServices = Depends(get_services)):
    services.report_widget_error(
        conversation_id,
        str(body.error) if body.error else "Unknown widget error",
        str(body.stack) if body.stack else None,
        str(body.appId) if body.appId else None,
    )
    return {"ok": True}


def append_widget_log(apps_dir: Path, widget_path: str, data: Any, line: Optional[int] = None,
                      now: Optional[datetime] = None) -> Path:
    """Append one `HH:MM:SS L<line> data` line to `<apps_dir>/<widget_path>/logs/<YYYY-MM-DD>.log`."""
    now = now or datetime.now()
    log_dir = apps_dir / widget_path / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{now:%Y-%m-%d}.log"
    line_str = f" L{line}" if line else ""
    with open(log_file, "a", encoding="utf-8") as f:
        f.write(f"{now:%H:%M:%S}{line_str} {data}\n")
    return log_file


@api.post("/api/widget-log")
async def api_widget_log(body: WidgetLogLine, request: Request):
    widget_path = body.widgetPath
    if not widget_path or not isinstance(widget_path, str):
        return JSONResponse({"ok": False, "error": "widgetPath required"}, status_code=400)
    if ".." in widget_path or not _WIDGET_PATH_RE.fullmatch(widget_path) or widget_path.startswith("/"):
        return JSONResponse({"ok": False, "error": "Invalid widgetPath"}, status_code=400)
    try:
        append_widget_log(Path(request.app.state.apps_dir), widget_path, body.data, body.line)
    except OSError as e:
        logger.error(f"[Widget Log] Write failed: {e}")
        return JSONResponse({"ok": False, "error": "Failed to write log"}, status_code=500)
    return {"ok": True}


@api.get("/api/widget/{message_id}")
async def api_widget_message(message_id: str):
    db = await get_db()
    msg = await crud.msg_get(db, message_id)
    if msg is None:
        raise ApiError(404, "Message not found")
    return message_to_dict(msg)


def _notice_page(text: str, status: int) -> HTMLResponse:
    return HTMLResponse(
        f"<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>{APP_NAME}</title></head>"
        f"<body style=\"font-family:system-ui;color:#666;display:flex;align-items:center;"
        f"justify-content:center;height:100vh;margin:0\">{text}</body></html>",
        status_code=status,
    )


@api.get("/message/{message_id}/widget", response_class=HTMLResponse)
async def widget_page(message_id: str, conversationId: Optional[str] = None):
    """Standalone fullscreen rendering of the single widget in a message."""
    db = await get_db()
    msg = await crud.msg_get(db, message_id)
    if msg is None:
        return _notice_page("Failed to load widget", 404)
    widgets = extract_widgets(msg.content)
    if len(widgets) != 1:
        return _notice_page("Message does not contain exactly one widget", 400)
    conv = conversationId or msg.conversation_id or DEFAULT_CONVERSATION
    return HTMLResponse(wrap_widget_html(widgets[0].code, FULLSCREEN, conv))


@api.get("/widget/{app}/{path:path}")
async def widget_static(app: str, path: str, request: Request):
    """Static files of a widget app: /widget/<app>/<path> -> <apps_dir>/<app>/public/<path>."""
    if not valid_app_id(app):
        raise ApiError(404, "Not found")
    public_dir = (Path(request.app.state.apps_dir) / app / "public").resolve()
    target = (public_dir / (path or "index.html")).resolve()
    if target.is_dir():
        target = target / "index.html"
    if public_dir not in target.parents or not target.is_file():
        raise ApiError(404, "Not found")
    return FileResponse(target)


@api.post("/api/visibility")
async def api_visibility(request: Request, session: Optional[Session] = Depends(require_session)):
    try:
        body = await request.json()
    except ValueError:
        body = None
    visible = body.get("visible") if isinstance(body, dict) else None
    if not isinstance(visible, bool):
        raise ApiError(400, "visible (boolean) required")
    if session is not None:
        db = await get_db()
        await crud.session_set_visibility(db, session.id, visible)
    return {"ok": True}


@api.get("/", response_class=HTMLResponse)
async def index_page():
    return HTMLResponse(
        f"<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>{APP_NAME}</title>"
        f"<script>window.__APP_NAME__={json.dumps(APP_NAME)}</script></head><body></body></html>"
    )


# ─────────────────────────────────────────────
# App factory
# ─────────────────────────────────────────────

def create_app(
    services: Optional[ChatServices] = None,
    auth_enabled: bool = AUTH_ENABLED,
    apps_dir: str = APPS_DIR,
    chat_public_dir: str = CHAT_PUBLIC_DIR,
    prompts_dir: str = PROMPTS_DIR,
    upload_max_bytes: int = UPLOAD_MAX_BYTES,
    heartbeat_interval: float = SSE_HEARTBEAT_INTERVAL,
    manage_services: bool = True,
) -> FastAPI:
    """
    Build the public app. With `manage_services` the app's lifespan runs the
    SSE heartbeat and closes the services and the database on shutdown.
    """
    services = services or ChatServices()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await get_db()
        heartbeat = asyncio.create_task(services.bus.run_heartbeat(heartbeat_interval)) if manage_services else None
        logger.info(f"{APP_NAME} public API running at http://{HOST}:{PORT}")
        yield
        if heartbeat is not None:
            heartbeat.cancel()
            await services.aclose()
            await close_db()

    app = FastAPI(
        title=APP_NAME,
        description="Self-hosted chat between one user and one agent.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.auth_enabled = auth_enabled
    app.state.apps_dir = apps_dir
    app.state.chat_public_dir = chat_public_dir
    app.state.prompts_dir = prompts_dir
    app.state.upload_max_bytes = upload_max_bytes
    install_error_handlers(app)
    app.include_router(public)
    app.include_router(api)
    return app


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    configure_logging()
    uvicorn.run("clawchat.main:create_app", factory=True, host=HOST, port=PORT)
