"""
ClawChat agent-facing server (bind to localhost only).

The external agent posts replies, work state and scroll requests here, and
may use the same operations as MCP tools at /mcp/sse.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from mcp.server.sse import SseServerTransport
from pydantic import BaseModel

from clawchat.config import AGENT_HOST, AGENT_PORT, APP_NAME, VERSION, CHAT_PUBLIC_DIR, UPLOAD_MAX_BYTES
from clawchat.db import crud
from clawchat.db.database import get_db
from clawchat.db.models import Attachment, MESSAGE_TYPES, message_to_dict
from clawchat.files import save_upload
from clawchat.mcp_server import build_server
from clawchat.services import ChatServices, get_services
from clawchat.web import ApiError, install_error_handlers

logger = logging.getLogger("clawchat.agent_api")

router = APIRouter()


class AttachmentIn(BaseModel):
    filename: str
    mimetype: str
    size: int


class SendBody(BaseModel):
    conversationId: Optional[str] = None
    content: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    attachment: Optional[AttachmentIn] = None


class StateBody(BaseModel):
    state: Optional[str] = None


class TypingBody(BaseModel):
    active: bool = False


class ScrollBody(BaseModel):
    messageId: Optional[str] = None


class EditBody(BaseModel):
    content: Optional[str] = None


@router.post("/send")
async def agent_send(body: SendBody, services: ChatServices = Depends(get_services)):
    """Post an agent message. Response: {messageId}."""
    content = body.content or ""
    if not content.strip() and body.attachment is None:
        raise ApiError(400, "Content required")
    msg_type = body.type or "message"
    if msg_type not in MESSAGE_TYPES:
        raise ApiError(400, f"Invalid type '{msg_type}'")
    attachment = Attachment(**body.attachment.model_dump()) if body.attachment else None
    db = await get_db()
    msg = await services.post_agent_message(
        db, content, body.conversationId, msg_type=msg_type, name=body.name, attachment=attachment,
    )
    return {"messageId": msg.id}


@router.post("/upload")
async def agent_upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    content: str = Form(""),
    conversationId: Optional[str] = Form(None),
    services: ChatServices = Depends(get_services),
):
    """Post an agent message with an attached file (multipart/form-data)."""
    if file is None and not content.strip():
        raise ApiError(400, "File or content required")
    attachment = None
    if file is not None:
        attachment, _ = await save_upload(
            Path(request.app.state.chat_public_dir), file, request.app.state.upload_max_bytes,
        )
    db = await get_db()
    msg = await services.post_agent_message(db, content.strip(), conversationId, attachment=attachment)
    return message_to_dict(msg)


@router.post("/state")
async def agent_state(body: StateBody, services: ChatServices = Depends(get_services)):
    """Free-form work state; relayed verbatim as agentState."""
    services.monitor.set_state(body.state)
    return {"ok": True}


@router.post("/typing")
async def agent_typing(body: TypingBody, services: ChatServices = Depends(get_services)):
    services.monitor.set_typing(body.active)
    return {"ok": True}


@router.post("/scroll")
async def agent_scroll(body: ScrollBody, services: ChatServices = Depends(get_services)):
    if not body.messageId:
        raise ApiError(400, "messageId required")
    services.scroll_to(body.messageId)
    return {"ok": True}


@router.patch("/messages/{message_id}")
async def agent_edit_message(message_id: str, body: EditBody, services: ChatServices = Depends(get_services)):
    if body.content is None:
        raise ApiError(400, "Content required")
    db = await get_db()
    msg = await services.edit_message(db, message_id, body.content)
    return message_to_dict(msg)


@router.delete("/messages/{message_id}")
async def agent_delete_message(message_id: str, services: ChatServices = Depends(get_services)):
    db = await get_db()
    await services.delete_message(db, message_id, notify_agent=False)
    return {"ok": True}


@router.get("/messages")
async def agent_list_messages(search: Optional[str] = None, conversationId: Optional[str] = None):
    db = await get_db()
    msgs = await crud.msg_list(db, conversation_id=conversationId, search=search)
    return [message_to_dict(m) for m in msgs]


@router.get("/presence")
async def agent_presence():
    """Whether any signed-in device currently has the chat visible."""
    db = await get_db()
    return {"visible": await crud.sessions_any_visible(db)}


@router.get("/health")
async def agent_health():
    return {"status": "ok", "api": "agent"}


# ─────────────────────────────────────────────
# MCP SSE Transport (mounted at /mcp)
# ─────────────────────────────────────────────

class _SseCompletedResponse:
    """
    Returned from the MCP SSE endpoint after connect_sse() exits. The
    transport has already sent the full HTTP response itself, so this must
    not emit any further ASGI messages.
    """
    async def __call__(self, scope, receive, send):
        pass


def mount_mcp(app: FastAPI, services: ChatServices) -> None:
    mcp_server = build_server(services)
    sse_transport = SseServerTransport("/mcp/messages/")

    @app.get("/mcp/sse")
    async def mcp_sse_endpoint(request: Request):
        """MCP SSE endpoint consumed by MCP clients."""
        try:
            async with sse_transport.connect_sse(
                request.scope, request.receive, request._send
            ) as streams:
                await mcp_server.run(
                    streams[0], streams[1],
                    mcp_server.create_initialization_options(),
                )
        except Exception as exc:
            # Normal disconnects surface as ClosedResourceError / CancelledError.
            logger.debug("MCP SSE session ended: %s: %s", type(exc).__name__, exc)
        return _SseCompletedResponse()

    # Raw ASGI app: the transport answers 202 itself.
    app.mount("/mcp/messages/", app=sse_transport.handle_post_message)


def create_agent_app(
    services: ChatServices,
    chat_public_dir: str = CHAT_PUBLIC_DIR,
    upload_max_bytes: int = UPLOAD_MAX_BYTES,
) -> FastAPI:
    """Build the agent app around the same services as the public app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await get_db()
        logger.info(f"{APP_NAME} agent API running at http://{AGENT_HOST}:{AGENT_PORT}")
        yield

    app = FastAPI(
        title=f"{APP_NAME} Agent API",
        description="Localhost-only API for the agent process.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.chat_public_dir = chat_public_dir
    app.state.upload_max_bytes = upload_max_bytes
    install_error_handlers(app)
    app.include_router(router)
    mount_mcp(app, services)
    return app
