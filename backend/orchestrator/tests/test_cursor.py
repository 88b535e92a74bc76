import base64
import json
from datetime import datetime, timedelta, timezone

from backend.orchestrator.app.cursor import (
    CheckpointState,
    cursor_position,
    decode_cursor,
    encode_cursor,
    ensure_utc,
    is_checkpoint_stale,
    parse_timestamp,
)


def test_cursor_encodes_position_as_base64_json() -> None:
    timestamp = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    token = encode_cursor(timestamp, "run-9")
    payload = json.loads(base64.b64decode(token))

    assert payload == {"id": "run-9", "createdAt": "2024-05-01T12:30:00+00:00"}
    assert cursor_position(token) == (timestamp, "run-9")


def test_cursor_position_uses_requested_field() -> None:
    timestamp = datetime(2024, 5, 1, tzinfo=timezone.utc)
    token = encode_cursor(timestamp, "signal-1", "timestamp")

    assert cursor_position(token, "timestamp") == (timestamp, "signal-1")
    assert cursor_position(token, "createdAt") is None


def test_malformed_cursors_are_ignored() -> None:
    assert decode_cursor(None) is None
    assert decode_cursor("") is None
    assert decode_cursor("%%%not-base64") is None
    assert decode_cursor(base64.b64encode(b"[1, 2]").decode()) is None
    assert decode_cursor(base64.b64encode(b'{"id": 5}').decode()) is None


def test_url_safe_cursor_without_padding_is_accepted() -> None:
    raw = json.dumps({"id": "a?>", "createdAt": "2024-01-01T00:00:00Z"}).encode()
    token = base64.urlsafe_b64encode(raw).decode().rstrip("=")

    assert cursor_position(token) == (datetime(2024, 1, 1, tzinfo=timezone.utc), "a?>")


def test_parse_timestamp_normalises_to_utc() -> None:
    assert parse_timestamp("2024-01-01T02:00:00+02:00") == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("garbage") is None
    assert parse_timestamp(42) is None
    assert ensure_utc(datetime(2024, 1, 1)).tzinfo is timezone.utc


def test_checkpoint_state_round_trips_through_wire_names() -> None:
    state = CheckpointState(last_processed_index=41, last_processed_timestamp="2024-01-01T00:41:00Z",
                            persisted_counts={"signals": 3, "fills": 2})

    payload = state.to_dict()

    assert payload["lastProcessedIndex"] == 41
    assert payload["persistedCounts"] == {"signals": 3, "fills": 2}
    assert CheckpointState.from_dict(payload) == state


def test_checkpoint_state_from_invalid_payload() -> None:
    assert CheckpointState.from_dict(None) is None
    assert CheckpointState.from_dict({}) is None
    assert CheckpointState.from_dict({"lastProcessedIndex": "abc"}) is None


def test_checkpoint_staleness() -> None:
    now = datetime(2024, 6, 10, tzinfo=timezone.utc)
    max_age = timedelta(days=7)

    assert is_checkpoint_stale(now - timedelta(days=8), max_age, now) is True
    assert is_checkpoint_stale(now - timedelta(days=6), max_age, now) is False
    assert is_checkpoint_stale(None, max_age, now) is False
