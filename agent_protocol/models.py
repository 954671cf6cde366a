"""
Agent Protocol Models.

============================================================
WIRE CONTRACT
============================================================
health() -> {ok: bool, channels: [{name, type, ok}], uptime: number}
status() -> {state, version, configHash}

``channels`` may also arrive as an object map keyed by channel
name; both shapes normalize to a list of ChannelHealth.

============================================================
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


DEFAULT_TIMEOUT_MS = 10_000
PROTOCOL_VERSION = 1


class AuthMode(str, Enum):
    TOKEN = "token"
    PASSWORD = "password"


@dataclass(frozen=True)
class AgentAuth:
    """Token or password credentials."""
    mode: AuthMode
    secret: str = ""

    @classmethod
    def from_connection(cls, auth_mode: str, auth_token: Optional[str]) -> "AgentAuth":
        mode = AuthMode.TOKEN if auth_mode == AuthMode.TOKEN.value else AuthMode.PASSWORD
        return cls(mode=mode, secret=auth_token or "")

    def to_wire(self) -> Dict[str, str]:
        if self.mode is AuthMode.TOKEN:
            return {"mode": "token", "token": self.secret}
        return {"mode": "password", "password": self.secret}


@dataclass(frozen=True)
class ConnectionOptions:
    """
    Where and how to reach one agent gateway.

    The client never reconnects: every call is connect, RPC,
    disconnect within ``timeout_ms``.
    """
    host: str
    port: int
    auth: AgentAuth
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    client_name: str = "bot-fleet-monitor"
    client_version: str = "1.0.0"

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class ChannelHealth:
    name: str
    type: str
    ok: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "ok": self.ok}


@dataclass
class AgentHealth:
    """Health snapshot reported by an agent."""
    ok: bool
    channels: List[ChannelHealth] = field(default_factory=list)
    uptime: float = 0
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def channels_linked(self) -> int:
        return len(self.channels)

    @property
    def channels_degraded(self) -> int:
        return sum(1 for channel in self.channels if not channel.ok)

    @property
    def is_healthy(self) -> bool:
        """Gateway ok and no degraded channel."""
        return self.ok and self.channels_degraded == 0

    @classmethod
    def from_wire(cls, payload: Optional[Dict[str, Any]]) -> "AgentHealth":
        payload = payload or {}
        raw_channels = payload.get("channels") or []
        if isinstance(raw_channels, dict):
            entries = []
            for key, value in raw_channels.items():
                value = dict(value) if isinstance(value, dict) else {"ok": bool(value)}
                value.setdefault("name", key)
                entries.append(value)
        else:
            entries = [entry for entry in raw_channels if isinstance(entry, dict)]

        channels = [
            ChannelHealth(
                name=str(entry.get("name", "")),
                type=str(entry.get("type", entry.get("name", ""))),
                ok=bool(entry.get("ok", False)),
            )
            for entry in entries
        ]
        return cls(
            ok=bool(payload.get("ok", False)),
            channels=channels,
            uptime=payload.get("uptime") or 0,
            raw=payload,
        )

    @classmethod
    def unknown(cls) -> "AgentHealth":
        """Synthetic snapshot for an unreachable agent."""
        return cls(ok=False, channels=[], uptime=0, raw={"ok": False, "channels": [], "uptime": 0})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "channels": [channel.to_dict() for channel in self.channels],
            "uptime": self.uptime,
        }


@dataclass(frozen=True)
class AgentStatus:
    state: str
    version: str
    config_hash: str

    @classmethod
    def from_wire(cls, payload: Optional[Dict[str, Any]]) -> "AgentStatus":
        payload = payload or {}
        return cls(
            state=str(payload.get("state", "unknown")),
            version=str(payload.get("version", "unknown")),
            config_hash=str(payload.get("configHash") or ""),
        )

    @classmethod
    def unknown(cls, state: str = "unknown") -> "AgentStatus":
        return cls(state=state, version="unknown", config_hash="")

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state, "version": self.version, "configHash": self.config_hash}


def build_connect_frame(options: ConnectionOptions) -> Dict[str, Any]:
    """Frame sent in answer to the gateway's challenge."""
    return {
        "type": "connect",
        "protocolVersion": {"min": PROTOCOL_VERSION, "max": PROTOCOL_VERSION},
        "auth": options.auth.to_wire(),
        "clientMetadata": {
            "name": options.client_name,
            "version": options.client_version,
        },
        "capabilities": [],
    }


__all__ = [
    "AuthMode",
    "DEFAULT_TIMEOUT_MS",
    "PROTOCOL_VERSION",
    "AgentAuth",
    "ConnectionOptions",
    "ChannelHealth",
    "AgentHealth",
    "AgentStatus",
    "build_connect_frame",
]
