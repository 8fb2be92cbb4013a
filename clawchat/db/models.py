"""
Data models (dataclasses) for ClawChat.
These are plain Python objects used across the DB, MCP, and API layers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Any

MESSAGE_ROLES = ("user", "agent")
MESSAGE_TYPES = ("message", "thought", "tool_call", "tool_result")
DEFAULT_CONVERSATION = "default"


@dataclass
class Attachment:
    filename: str
    mimetype: str
    size: int


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str            # user | agent
    type: str            # message | thought | tool_call | tool_result
    content: str
    created_at: str      # ISO-8601 UTC, the only ordering key
    name: Optional[str] = None              # tool name for tool_call / tool_result
    attachment: Optional[Attachment] = None

    @property
    def is_internal(self) -> bool:
        """Agent-internal work (thoughts, tool traffic) as opposed to a chat message."""
        return self.type != "message"


@dataclass
class AppState:
    conversation_id: str
    app_id: str
    state: Any           # arbitrary JSON value
    version: int         # advisory, stored as supplied by the writer
    updated_at: str


@dataclass
class Session:
    id: str
    token: str
    created_at: datetime
    expires_at: datetime
    visible: bool
    last_active_at: Optional[datetime]


@dataclass
class Invite:
    token: str
    expires_at: datetime
    used: bool


def message_to_dict(m: Message) -> dict:
    """Wire shape of a message (camelCase keys, optional fields omitted)."""
    data = {
        "id": m.id,
        "conversationId": m.conversation_id,
        "role": m.role,
        "type": m.type,
        "content": m.content,
        "createdAt": m.created_at,
    }
    if m.name:
        data["name"] = m.name
    if m.attachment:
        data["attachment"] = {
            "filename": m.attachment.filename,
            "mimetype": m.attachment.mimetype,
            "size": m.attachment.size,
        }
    return data


def app_state_to_dict(s: AppState) -> dict:
    return {
        "conversationId": s.conversation_id,
        "appId": s.app_id,
        "state": s.state,
        "version": s.version,
        "updatedAt": s.updated_at,
    }
