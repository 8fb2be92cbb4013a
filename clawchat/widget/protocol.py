"""
Widget <-> host message protocol.

Every cross-frame message is one variant of a tagged union keyed on `type`.
Inbound (widget -> host) messages are validated strictly at the boundary;
anything that does not match a known shape raises WidgetProtocolError.
"""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, TypeAdapter, ValidationError


class WidgetProtocolError(Exception):
    """A malformed or unknown widget message. `request_id` is set when the sender expects a response."""

    def __init__(self, message: str, request_id: Any = None) -> None:
        self.request_id = request_id
        super().__init__(message)


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, strict=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ─────────────────────────────────────────────
# widget -> host
# ─────────────────────────────────────────────

class GetState(_Message):
    type: Literal["get-state"] = "get-state"
    app_id: str = Field(alias="appId", min_length=1)


class SetState(_Message):
    type: Literal["set-state"] = "set-state"
    app_id: str = Field(alias="appId", min_length=1)
    state: Any = None


class Resize(_Message):
    type: Literal["resize"] = "resize"
    # NaN / infinities pass here and are rejected by the host with a report.
    height: Union[StrictInt, StrictFloat]


class Request(_Message):
    type: Literal["request"] = "request"
    id: Union[StrictInt, str]
    app_id: str = Field(alias="appId", min_length=1)
    action: str = Field(min_length=1)
    payload: Any = None


class WidgetError(_Message):
    type: Literal["error"] = "error"
    error: str
    stack: Optional[str] = None


WidgetMessage = Annotated[
    Union[GetState, SetState, Resize, Request, WidgetError],
    Field(discriminator="type"),
]

# ─────────────────────────────────────────────
# host -> widget
# ─────────────────────────────────────────────

class State(_Message):
    type: Literal["state"] = "state"
    state: Any = None

    def to_wire(self) -> dict:
        # `state: null` is meaningful (no stored state yet).
        return {"type": self.type, "state": self.state}


class Response(_Message):
    type: Literal["response"] = "response"
    id: Union[StrictInt, str]
    data: Optional[dict] = None
    error: Optional[str] = None


class StateUpdated(_Message):
    type: Literal["state-updated"] = "state-updated"
    app_id: str = Field(alias="appId", min_length=1)


HostMessage = Annotated[Union[State, Response, StateUpdated], Field(discriminator="type")]

_widget_adapter = TypeAdapter(WidgetMessage)
_host_adapter = TypeAdapter(HostMessage)


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"][1:]) or "message"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def parse_widget_message(raw: Any) -> Union[GetState, SetState, Resize, Request, WidgetError]:
    if not isinstance(raw, dict):
        raise WidgetProtocolError(f"Widget message must be an object, got {type(raw).__name__}")
    msg_type = raw.get("type")
    request_id = raw.get("id") if msg_type == "request" else None
    try:
        return _widget_adapter.validate_python(raw)
    except ValidationError as e:
        raise WidgetProtocolError(f"Invalid '{msg_type}' message: {_describe(e)}", request_id) from e


def parse_host_message(raw: Any) -> Union[State, Response, StateUpdated]:
    if not isinstance(raw, dict):
        raise WidgetProtocolError(f"Host message must be an object, got {type(raw).__name__}")
    try:
        return _host_adapter.validate_python(raw)
    except ValidationError as e:
        raise WidgetProtocolError(f"Invalid '{raw.get('type')}' message: {_describe(e)}") from e
