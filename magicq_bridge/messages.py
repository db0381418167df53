# magicq_bridge/messages.py
# -----------------------------------------------------------------------------
# Websocket wire format.
#
# Client -> server (one JSON object per frame, tagged by "type"):
#   {"type": "reload-executors"}
#   {"type": "exec", "number": 5, "value": 0.5}
#   {"type": "exec", "address": "/exec/1/5", "value": 0.5}
#
# Server -> client: {"type": <event>, "data": {...}}
#   connection, show-setup, val, spl, error
# -----------------------------------------------------------------------------

from __future__ import annotations

import json
import re
from typing import Annotated, Any, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

_OSC_EXEC_PATH = re.compile(r"^/exec/1/(\d+)$")


class ClientMessageError(Exception):
    """
    A client frame that cannot be turned into a command.

    kind:
        malformed - not JSON / not an object
        unknown   - "type" tag we do not handle
        invalid   - known tag, bad fields
    """

    def __init__(self, kind: str, detail: str, msg_type: Optional[str] = None):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        self.msg_type = msg_type


class ReloadExecutors(BaseModel):
    type: Literal["reload-executors"]


class ExecCommand(BaseModel):
    type: Literal["exec"]
    number: Optional[int] = None
    address: Optional[Union[int, str]] = None
    value: float

    @model_validator(mode="after")
    def _check_target(self) -> "ExecCommand":
        self.target()
        return self

    def target(self) -> Tuple[str, int]:
        """
        ("logical", n) for an executor number, ("physical", n) for an OSC path.
        Raises ValueError when neither resolves.
        """
        if self.number is not None:
            if self.number < 0:
                raise ValueError("executor number must not be negative")
            return "logical", int(self.number)
        addr = self.address
        if isinstance(addr, int):
            if addr < 0:
                raise ValueError("executor address must not be negative")
            return "logical", addr
        if isinstance(addr, str):
            text = addr.strip()
            if text.isdigit():
                return "logical", int(text)
            m = _OSC_EXEC_PATH.match(text)
            if m:
                return "physical", int(m.group(1))
        raise ValueError("exec needs a 'number' or an 'address' (executor number or /exec/1/<n>)")


ClientCommand = Annotated[Union[ReloadExecutors, ExecCommand], Field(discriminator="type")]
_COMMAND = TypeAdapter(ClientCommand)
KNOWN_TYPES = ("reload-executors", "exec")


def decode_client_message(raw: Union[str, bytes]) -> Union[ReloadExecutors, ExecCommand]:
    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise ClientMessageError("malformed", f"not JSON: {e}") from None
    if not isinstance(payload, dict):
        raise ClientMessageError("malformed", "frame must be a JSON object")

    msg_type = payload.get("type")
    if msg_type not in KNOWN_TYPES:
        raise ClientMessageError("unknown", f"unknown message type {msg_type!r}", msg_type=str(msg_type))
    try:
        return _COMMAND.validate_python(payload)
    except ValidationError as e:
        raise ClientMessageError("invalid", str(e), msg_type=msg_type) from None


# ----------------------------- push events -----------------------------

def encode_event(event_type: str, data: Any) -> str:
    return json.dumps({"type": event_type, "data": data}, separators=(",", ":"))


def connection_event(status: str = "connected") -> str:
    return encode_event("connection", {"status": status})


def value_event(number: int, value: float) -> str:
    return encode_event("val", {"number": number, "value": value})


def sample_event(sample: Any) -> str:
    return encode_event("spl", sample)


def error_event(error: str) -> str:
    return encode_event("error", {"error": error})


def show_setup_event(payload: dict) -> str:
    return encode_event("show-setup", payload)
