from __future__ import annotations

# Per-handle run results.
#
# A RunResult belongs to exactly one Client Handle. Only that handle (its
# own thread, or paho's network thread for the same client) writes to it, and
# only while the handle is open. `close()` is called by the handle on
# disconnect; from then on the result is read-only and the report can read it
# without locking.

import time
from dataclasses import dataclass, field
from typing import Any

from .errors import ErrorRecord, LoadTestError

ROLE_PUBLISHER = "publisher"
ROLE_SUBSCRIBER = "subscriber"


@dataclass
class RunResult:
    client_id: str
    role: str
    sent: int = 0
    acked: int = 0
    received: int = 0
    duplicates: int = 0
    # Messages on the topic that did not come from this run's publishers.
    foreign: int = 0
    errors: list[ErrorRecord] = field(default_factory=list)
    receipts: list[float] = field(default_factory=list)

    # Subscriber side: per source publisher.
    received_by_publisher: dict[str, int] = field(default_factory=dict)
    latencies_by_publisher: dict[str, list[float]] = field(default_factory=dict)

    connected: bool = False
    connect_failed: bool = False
    closed: bool = False
    _seen: set[tuple[str, int]] = field(default_factory=set, repr=False)

    # -------------------- mutators (owner only) --------------------

    def record_connected(self) -> None:
        self._check_open()
        self.connected = True

    def record_connect_failed(self) -> None:
        self._check_open()
        self.connect_failed = True

    def record_sent(self) -> None:
        self._check_open()
        self.sent += 1

    def record_acked(self) -> None:
        self._check_open()
        self.acked += 1

    def record_error(self, error: ErrorRecord | LoadTestError) -> None:
        self._check_open()
        if isinstance(error, LoadTestError):
            error = error.to_record()
        self.errors.append(error)

    def record_receipt(
        self,
        *,
        received_at: float | None = None,
        publisher: str | None = None,
        seq: int | None = None,
        sent_at: float | None = None,
    ) -> None:
        """Count one received message.

        `publisher`/`seq`/`sent_at` come from the message envelope when the
        message could be decoded. A repeated (publisher, seq) pair counts as a
        duplicate, which is legal at QoS 1.
        """
        self._check_open()
        ts = time.time() if received_at is None else received_at
        self.received += 1
        self.receipts.append(ts)
        if publisher is None:
            return

        if seq is not None:
            key = (publisher, seq)
            if key in self._seen:
                self.duplicates += 1
            else:
                self._seen.add(key)

        self.received_by_publisher[publisher] = self.received_by_publisher.get(publisher, 0) + 1
        if sent_at is not None:
            self.latencies_by_publisher.setdefault(publisher, []).append(max(0.0, ts - sent_at))

    def record_foreign(self) -> None:
        self._check_open()
        self.foreign += 1

    def close(self) -> None:
        self.closed = True

    # -------------------- views --------------------

    @property
    def unique_received(self) -> int:
        return self.received - self.duplicates

    def to_message(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "role": self.role,
            "connected": self.connected,
            "connect_failed": self.connect_failed,
            "sent": self.sent,
            "acked": self.acked,
            "received": self.received,
            "duplicates": self.duplicates,
            "foreign": self.foreign,
            "errors": [e.to_message() for e in self.errors],
        }

    def _check_open(self) -> None:
        if self.closed:
            raise RuntimeError(f"RunResult for {self.client_id} is read-only after disconnect")
