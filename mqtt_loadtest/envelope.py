from __future__ import annotations

# Message envelope.
#
# Each publisher wraps the configured payload in a small JSON object so the
# subscriber can attribute a message to its publisher, spot duplicates and
# compute end-to-end latency:
#
#   {"pub": "<client_id>", "seq": 17, "ts": 1712345678.123, "body": "..."}
#
# `ts` is wall-clock time (time.time()) because the subscriber compares it
# against its own clock; on a single host that is good enough.

import json
import time
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Envelope:
    publisher: str
    seq: int
    sent_at: float
    body: str

    def to_message(self) -> dict[str, Any]:
        return {"pub": self.publisher, "seq": self.seq, "ts": self.sent_at, "body": self.body}


def encode(*, publisher: str, seq: int, body: str, sent_at: float | None = None) -> bytes:
    env = Envelope(
        publisher=publisher,
        seq=seq,
        sent_at=time.time() if sent_at is None else sent_at,
        body=body,
    )
    return json.dumps(env.to_message(), separators=(",", ":")).encode("utf-8")


def decode(raw: bytes | str) -> Envelope | None:
    """Parse an envelope; return None for anything that is not one.

    Foreign traffic on the same topic is still counted as received by the
    subscriber, it just cannot be attributed.
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        data = json.loads(text)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    publisher = data.get("pub")
    seq = data.get("seq")
    sent_at = data.get("ts")
    if not isinstance(publisher, str) or not isinstance(seq, int) or not isinstance(sent_at, (int, float)):
        return None
    return Envelope(publisher=publisher, seq=seq, sent_at=float(sent_at), body=str(data.get("body", "")))


def make_body(size: int) -> str:
    """A filler body of `size` characters."""
    if size < 0:
        raise ValueError("size must be >= 0")
    return "x" * size
