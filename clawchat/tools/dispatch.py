"""
Tool dispatch layer for the ClawChat MCP server.
Each handler receives the shared services, the db connection and the raw
tool arguments, and answers with MCP text content holding JSON.
"""
import json
import logging
from typing import Any

import mcp.types as types

from clawchat.db import crud
from clawchat.db.models import DEFAULT_CONVERSATION, message_to_dict, app_state_to_dict
from clawchat.services import ChatServices, valid_app_id

logger = logging.getLogger(__name__)


def _text(data: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(data, ensure_ascii=False))]


def _error(message: str, **extra) -> list[types.TextContent]:
    return _text({"error": message, **extra})


async def handle_msg_send(services: ChatServices, db, arguments: dict[str, Any]) -> list[types.TextContent]:
    content = arguments.get("content") or ""
    if not content.strip():
        return _error("Content required")
    msg = await services.post_agent_message(
        db,
        content,
        conversation_id=arguments.get("conversation_id"),
        msg_type=arguments.get("type") or "message",
        name=arguments.get("name"),
    )
    return _text({"messageId": msg.id, "createdAt": msg.created_at})


async def handle_msg_list(services: ChatServices, db, arguments: dict[str, Any]) -> list[types.TextContent]:
    msgs = await crud.msg_list(
        db,
        conversation_id=arguments.get("conversation_id"),
        search=arguments.get("search"),
    )
    limit = arguments.get("limit")
    if limit is not None:
        limit = max(0, int(limit))
        msgs = msgs[max(0, len(msgs) - limit):]
    return _text([message_to_dict(m) for m in msgs])


async def handle_msg_update(services: ChatServices, db, arguments: dict[str, Any]) -> list[types.TextContent]:
    msg = await services.edit_message(db, arguments["message_id"], arguments["content"])
    return _text(message_to_dict(msg))


async def handle_msg_delete(services: ChatServices, db, arguments: dict[str, Any]) -> list[types.TextContent]:
    await services.delete_message(db, arguments["message_id"], notify_agent=False)
    return _text({"ok": True})


async def handle_agent_set_state(services: ChatServices, db, arguments: dict[str, Any]) -> list[types.TextContent]:
    services.monitor.set_state(arguments.get("state"))
    return _text({"ok": True, "state": services.monitor.status.state})


async def handle_chat_scroll_to(services: ChatServices, db, arguments: dict[str, Any]) -> list[types.TextContent]:
    message_id = arguments.get("message_id")
    if not message_id:
        return _error("messageId required")
    services.scroll_to(message_id)
    return _text({"ok": True})


async def handle_app_state_get(services: ChatServices, db, arguments: dict[str, Any]) -> list[types.TextContent]:
    app_id = arguments.get("app_id")
    if not valid_app_id(app_id):
        return _error("Invalid appId")
    record = await crud.app_state_get(db, arguments.get("conversation_id") or DEFAULT_CONVERSATION, app_id)
    if record is None:
        return _error("Not found")
    return _text(app_state_to_dict(record))


async def handle_app_state_set(services: ChatServices, db, arguments: dict[str, Any]) -> list[types.TextContent]:
    app_id = arguments.get("app_id")
    if not valid_app_id(app_id):
        return _error("Invalid appId")
    if "state" not in arguments:
        return _error("State required")
    record = await services.set_app_state(
        db,
        arguments.get("conversation_id") or DEFAULT_CONVERSATION,
        app_id,
        arguments["state"],
        arguments.get("version"),
    )
    return _text(app_state_to_dict(record))


TOOLS_DISPATCH = {
    "msg_send": handle_msg_send,
    "msg_list": handle_msg_list,
    "msg_update": handle_msg_update,
    "msg_delete": handle_msg_delete,
    "agent_set_state": handle_agent_set_state,
    "chat_scroll_to": handle_chat_scroll_to,
    "app_state_get": handle_app_state_get,
    "app_state_set": handle_app_state_set,
}


async def dispatch_tool(services: ChatServices, db, name: str, arguments: dict[str, Any]) -> list[types.Content]:
    handler = TOOLS_DISPATCH.get(name)
    if handler is None:
        return _error(f"Unknown tool: {name}")
    try:
        return await handler(services, db, arguments or {})
    except crud.MessageNotFound as e:
        return _error("Message not found", message_id=e.message_id)
    except crud.MessageNotEditable:
        return _error("Cannot edit internal messages")
    except crud.StateTooLarge as e:
        return _error("State too large", size=e.size, limit=e.limit)
    except crud.InvalidState:
        return _error("Invalid state")
    except (KeyError, ValueError) as e:
        logger.warning(f"[mcp] {name} rejected: {e}")
        return _error(f"Invalid arguments: {e}")
