"""Pagination cursors and checkpoint helpers for backtest runs."""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple


CREATED_AT_FIELD = "createdAt"
TIMESTAMP_FIELD = "timestamp"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values and normalise aware ones."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    normalised = ensure_utc(value)
    return normalised.isoformat() if normalised is not None else None


def encode_cursor(timestamp: datetime, record_id: str, field_name: str = CREATED_AT_FIELD) -> str:
    """Encode the position of *record_id* as an opaque base64 token."""

    payload = {"id": record_id, field_name: isoformat(timestamp)}
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_cursor(cursor: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the decoded cursor payload or ``None`` for malformed input."""

    if not cursor or not isinstance(cursor, str):
        return None
    token = cursor.strip().replace("-", "+").replace("_", "/")
    token += "=" * (-len(token) % 4)
    try:
        decoded = base64.b64decode(token, validate=True)
        payload = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
        return None
    return payload


def cursor_position(cursor: Optional[str], field_name: str = CREATED_AT_FIELD) -> Optional[Tuple[datetime, str]]:
    payload = decode_cursor(cursor)
    if payload is None:
        return None
    timestamp = parse_timestamp(payload.get(field_name))
    if timestamp is None:
        return None
    return timestamp, payload["id"]


@dataclass
class CheckpointState:
    """Simulation progress persisted so an interrupted run can resume."""

    last_processed_index: int
    last_processed_timestamp: Optional[str] = None
    persisted_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastProcessedIndex": self.last_processed_index,
            "lastProcessedTimestamp": self.last_processed_timestamp,
            "persistedCounts": dict(self.persisted_counts),
        }

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> Optional["CheckpointState"]:
        if not payload:
            return None
        try:
            index = int(payload.get("lastProcessedIndex", -1))
        except (TypeError, ValueError):
            return None
        counts = payload.get("persistedCounts") or {}
        return cls(
            last_processed_index=index,
            last_processed_timestamp=payload.get("lastProcessedTimestamp"),
            persisted_counts={str(key): int(value) for key, value in dict(counts).items()},
        )


def checkpoint_age(last_checkpoint_at: Optional[datetime], now: Optional[datetime] = None) -> Optional[timedelta]:
    if last_checkpoint_at is None:
        return None
    return (ensure_utc(now) or utcnow()) - ensure_utc(last_checkpoint_at)


def is_checkpoint_stale(
    last_checkpoint_at: Optional[datetime],
    max_age: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """A missing checkpoint is never stale."""

    age = checkpoint_age(last_checkpoint_at, now)
    return age is not None and age > max_age


__all__ = [
    "CREATED_AT_FIELD",
    "CheckpointState",
    "TIMESTAMP_FIELD",
    "checkpoint_age",
    "cursor_position",
    "decode_cursor",
    "encode_cursor",
    "ensure_utc",
    "is_checkpoint_stale",
    "isoformat",
    "parse_timestamp",
    "utcnow",
]
