"""Envelope types that travel across the message bus."""

import json
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

GATEWAY_TYPES = ("whatsapp", "signal", "nostr", "mesh", "web", "telegram", "discord")

META_CONVERSATION_ID = "conversation_id"
META_USER_ID = "user_id"
META_CTX = "ctx"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class GatewayInfo:
    type: str
    gateway_id: str = ""

    def to_dict(self) -> dict:
        return {"type": self.type, "gateway_id": self.gateway_id}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GatewayInfo":
        data = data or {}
        return cls(type=str(data.get("type") or ""), gateway_id=str(data.get("gateway_id") or ""))


@dataclass
class Source:
    gateway: GatewayInfo
    sender: str
    text: str = ""
    message_id: Optional[str] = None
    reply_to: Optional[str] = None
    message_data: Any = None
    has_media: bool = False


@dataclass
class Response:
    to: str
    text: str
    gateway: GatewayInfo
    quoted_message_id: Optional[str] = None


@dataclass
class BeaconMessage:
    beacon_id: str
    source: Source
    meta: Dict[str, Any] = field(default_factory=dict)
    response: Optional[Response] = None

    @classmethod
    def new(cls, source: Source, meta: Optional[Dict[str, Any]] = None) -> "BeaconMessage":
        return cls(beacon_id=new_id(), source=source, meta=dict(meta or {}))

    @property
    def conversation_id(self) -> str:
        return str(self.meta.get(META_CONVERSATION_ID) or "")

    @conversation_id.setter
    def conversation_id(self, value: str) -> None:
        self.meta[META_CONVERSATION_ID] = value

    @property
    def user_id(self) -> Optional[str]:
        return self.meta.get(META_USER_ID) or None

    @user_id.setter
    def user_id(self, value: Optional[str]) -> None:
        self.meta[META_USER_ID] = value

    @property
    def ctx(self) -> Dict[str, Any]:
        return self.meta.setdefault(META_CTX, {})

    def extract_text(self) -> str:
        text = (self.source.text or "").strip()
        if text:
            return text
        payload = self.source.message_data
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                return ""
        if isinstance(payload, dict):
            candidate = payload.get("body") or payload.get("text") or ""
            return str(candidate).strip()
        return ""

    def attach_response(self, text: str) -> Response:
        self.response = Response(
            to=self.source.sender,
            text=text,
            gateway=replace(self.source.gateway),
            quoted_message_id=self.source.message_id,
        )
        return self.response


@dataclass
class OutboundMessage:
    to: str
    body: str
    gateway: GatewayInfo
    quoted_message_id: Optional[str] = None
    delivery_id: Optional[str] = None
    message_id: Optional[str] = None
    beacon_id: Optional[str] = None
    ctx: Dict[str, Any] = field(default_factory=dict)
