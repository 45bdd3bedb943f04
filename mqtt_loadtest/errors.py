"""Error taxonomy shared by the client handles and the orchestrator.

Every error carries a short `cause` string and can be turned into an
`ErrorRecord`, which is what ends up in a RunResult and in the report.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ErrorRecord:
    cause: str
    kind: str = "error"
    timestamp: float = field(default_factory=time.time)

    def to_message(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "kind": self.kind, "cause": self.cause}


class LoadTestError(Exception):
    kind = "error"

    def __init__(self, cause: str) -> None:
        super().__init__(cause)
        self.cause = cause

    def to_record(self) -> ErrorRecord:
        return ErrorRecord(cause=self.cause, kind=self.kind)


class ConnectError(LoadTestError):
    """Network unreachable, broker refused the connection, protocol mismatch or timeout."""

    kind = "connect"


class PublishError(LoadTestError):
    kind = "publish"


class SubscribeError(LoadTestError):
    kind = "subscribe"


class DisconnectError(LoadTestError):
    """Only ever logged and recorded; teardown never raises it."""

    kind = "disconnect"
