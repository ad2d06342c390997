from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

import orjson
from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
)


# ---------------------------------------------------------------------------
# Inbound frame variants
# ---------------------------------------------------------------------------

TYPING_TYPES = frozenset({"typing", "stopTyping"})

NonEmpty = Annotated[str, Field(min_length=1)]


class RegisterFrame(BaseModel):
    """Bind the sending connection to ``username``."""

    type: Literal["register"]
    username: NonEmpty


class TypingFrame(BaseModel):
    """Ephemeral typing indicator, relayed but never stored."""

    type: Literal["typing", "stopTyping"]
    sender: NonEmpty
    recipient: NonEmpty


class ChatFrame(BaseModel):
    """A new direct message; any frame not claimed by another variant."""

    sender: NonEmpty
    recipient: NonEmpty
    message: NonEmpty


class EditFrame(BaseModel):
    """Replace the body of a stored message.

    Clients also send ``sender``/``recipient``; they are ignored, notices go to
    the participants recorded on the stored message.
    """

    type: Literal["edit"]
    message_id: NonEmpty = Field(alias="messageId")
    new_message: NonEmpty = Field(alias="newMessage")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("message_id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        # clients may echo numeric ids back; bools are not ids
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class UnrecognizedFrame(BaseModel):
    """Anything that parsed into none of the known variants."""

    reason: str
    raw: Any = None


def _frame_tag(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    type_ = value.get("type")
    if not isinstance(type_, str):
        return "chat"
    if type_ == "register":
        return "register"
    if type_ in TYPING_TYPES:
        return "typing"
    if type_ == "edit":
        return "edit"
    return "chat"


InboundFrame = Annotated[
    Union[
        Annotated[RegisterFrame, Tag("register")],
        Annotated[TypingFrame, Tag("typing")],
        Annotated[ChatFrame, Tag("chat")],
        Annotated[EditFrame, Tag("edit")],
    ],
    Discriminator(_frame_tag),
]

_inbound = TypeAdapter(InboundFrame)


def parse_frame(raw: Union[str, bytes]) -> Union[RegisterFrame, TypingFrame, ChatFrame, EditFrame, UnrecognizedFrame]:
    """Decode one inbound frame. Never raises on bad input."""

    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return UnrecognizedFrame(reason="invalid json")
    if not isinstance(data, dict):
        return UnrecognizedFrame(reason="not an object", raw=data)
    try:
        return _inbound.validate_python(data)
    except ValidationError as exc:
        errors = exc.error_count()
    # a malformed register/edit may still carry a complete chat message
    if _frame_tag(data) != "chat":
        try:
            return ChatFrame.model_validate(data)
        except ValidationError:
            pass
    return UnrecognizedFrame(reason=f"{errors} validation error(s)", raw=data)


# ---------------------------------------------------------------------------
# Outbound frames
# ---------------------------------------------------------------------------

def error_frame(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}


def info_frame(message: str) -> Dict[str, Any]:
    return {"type": "info", "message": message}


def edit_frame(record: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "edit", "message": record}


def typing_frame(frame: TypingFrame) -> Dict[str, Any]:
    return {"type": frame.type, "sender": frame.sender, "recipient": frame.recipient}


def encode_frame(frame: Dict[str, Any]) -> str:
    """Compact JSON text for the wire."""

    return orjson.dumps(frame).decode("utf-8")


__all__ = [
    "TYPING_TYPES",
    "RegisterFrame",
    "TypingFrame",
    "ChatFrame",
    "EditFrame",
    "UnrecognizedFrame",
    "InboundFrame",
    "parse_frame",
    "error_frame",
    "info_frame",
    "edit_frame",
    "typing_frame",
    "encode_frame",
]
