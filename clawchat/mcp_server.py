"""
MCP Server for ClawChat.

Exposes the agent-facing chat operations as MCP tools. Mounted onto the
agent app via the SSE transport.
"""
import logging
from typing import Any

import mcp.types as types
from mcp.server import Server

from clawchat.db.database import get_db
from clawchat.services import ChatServices
from clawchat.tools.dispatch import dispatch_tool

logger = logging.getLogger(__name__)

_CONVERSATION = {"type": "string", "description": "Conversation id. Defaults to 'default'."}

TOOLS = [
    types.Tool(
        name="msg_send",
        description="Post an agent message to the chat. A final 'message' ends the agent's busy state.",
        inputSchema={
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "Message text (markdown; may contain ```widget blocks)."},
                "conversation_id": _CONVERSATION,
                "type": {"type": "string", "enum": ["message", "thought", "tool_call", "tool_result"],
                         "description": "Omit for a regular message."},
                "name": {"type": "string", "description": "Tool name for tool_call / tool_result."},
            },
            "required": ["content"],
        },
    ),
    types.Tool(
        name="msg_list",
        description="List chat history in chronological order, optionally filtered by a search string.",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION,
                "search": {"type": "string", "description": "Case-insensitive substring filter on content."},
                "limit": {"type": "integer", "minimum": 0, "description": "Return only the newest N messages."},
            },
        },
    ),
    types.Tool(
        name="msg_update",
        description="Replace the content of a chat message. Internal work messages cannot be edited.",
        inputSchema={
            "type": "object",
            "properties": {
                "message_id": {"type": "string"},
                "content": {"type": "string"},
            },
            "required": ["message_id", "content"],
        },
    ),
    types.Tool(
        name="msg_delete",
        description="Delete a message.",
        inputSchema={
            "type": "object",
            "properties": {"message_id": {"type": "string"}},
            "required": ["message_id"],
        },
    ),
    types.Tool(
        name="agent_set_state",
        description=(
            "Report what the agent is doing. Well-known values: idle, inference, tool_execution, "
            "compaction; any other label is shown as-is. Only 'idle' means not busy."
        ),
        inputSchema={
            "type": "object",
            "properties": {"state": {"type": "string"}},
            "required": ["state"],
        },
    ),
    types.Tool(
        name="chat_scroll_to",
        description="Scroll every open chat view to a message.",
        inputSchema={
            "type": "object",
            "properties": {"message_id": {"type": "string"}},
            "required": ["message_id"],
        },
    ),
    types.Tool(
        name="app_state_get",
        description="Read the persisted state of a widget app.",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION,
                "app_id": {"type": "string"},
            },
            "required": ["app_id"],
        },
    ),
    types.Tool(
        name="app_state_set",
        description="Overwrite the persisted state of a widget app (last writer wins; max 1MB JSON).",
        inputSchema={
            "type": "object",
            "properties": {
                "conversation_id": _CONVERSATION,
                "app_id": {"type": "string"},
                "state": {"description": "Any JSON value."},
                "version": {"type": "integer", "description": "Advisory version, stored as given."},
            },
            "required": ["app_id", "state"],
        },
    ),
]


def build_server(services: ChatServices) -> Server:
    """Create the MCP server bound to one set of chat services."""
    server = Server("ClawChat")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.Content]:
        db = await get_db()
        return await dispatch_tool(services, db, name, arguments)

    return server
