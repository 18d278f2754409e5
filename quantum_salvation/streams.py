from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Mapping, Sequence, cast

import redis

from quantum_salvation.core.events import StoryEvent


@dataclass(frozen=True, slots=True)
class Outbox:
    session_id: str

    @property
    def key(self) -> str:
        return f"outbox:{self.session_id}"


def event_fields(*, session_id: str, event: StoryEvent) -> dict[str, str]:
    return {
        "type": event.type,
        "session_id": session_id,
        "payload": json.dumps(event.payload, default=str),
        "ts": event.ts.isoformat(),
    }


def publish_many(*, r: redis.Redis, entries: Sequence[tuple[str, Mapping[str, str]]]) -> list[str]:
    ids: list[str] = []
    for key, fields in entries:
        stream_id = r.xadd(key, {str(k): str(v) for k, v in fields.items()})
        ids.append(cast(str, stream_id))
    return ids


def publish_events(*, r: redis.Redis, outbox: Outbox, events: Iterable[StoryEvent]) -> list[str]:
    """Append story events to a session's outbox stream, in emission order."""

    entries = [(outbox.key, event_fields(session_id=outbox.session_id, event=e)) for e in events]
    return publish_many(r=r, entries=entries)


def read_outbox(*, r: redis.Redis, outbox: Outbox, after: str = "-", count: int = 100) -> list[dict[str, Any]]:
    start = "-" if after == "-" else f"({after}"
    out: list[dict[str, Any]] = []
    for entry_id, fields in r.xrange(outbox.key, min=start, max="+", count=count):
        out.append(
            {
                "id": entry_id,
                "type": fields.get("type"),
                "payload": json.loads(fields.get("payload") or "{}"),
                "ts": fields.get("ts"),
            }
        )
    return out
