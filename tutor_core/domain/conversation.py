from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol


TurnRole = Literal["user", "bot"]
SessionType = Literal["lecture", "study", "review"]


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class ConversationTurn:
    id: str
    role: TurnRole
    content: str
    timestamp: datetime
    related_tools: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            timestamp=_parse_iso(data["timestamp"]),
            related_tools=list(data.get("related_tools") or []),
        )


@dataclass(frozen=True)
class StoredMessage:
    id: str
    role: str
    content: str
    timestamp: datetime
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredMessage":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            timestamp=_parse_iso(data["timestamp"]),
            meta=data.get("meta") or {},
        )


@dataclass
class Session:
    id: str
    start_time: datetime
    type: SessionType = "study"
    end_time: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time) if self.end_time else None,
            "type": self.type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        end = data.get("end_time")
        return cls(
            id=data["id"],
            start_time=_parse_iso(data["start_time"]),
            type=data.get("type") or "study",
            end_time=_parse_iso(end) if end else None,
        )


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def put(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...
