"""Run report: pure aggregation over a terminated Session.

Nothing here touches the network or the orchestrator; `build_report` only
reads RunResults that are already closed.

Exit codes:
    0  pass: every handle connected and loss is within the threshold
    1  a handle failed to connect, or the session was aborted (subscriber)
    2  loss threshold exceeded
    3  the run was cancelled (Ctrl+C / SIGTERM) before it completed

Codes 1, 3 and 2 take precedence in that order.
"""

from __future__ import annotations

import json
import statistics
from dataclasses import asdict, dataclass, field
from typing import Any

from .orchestrator import Session, SessionState
from .result import RunResult

EXIT_OK = 0
EXIT_CONNECT_FAILURE = 1
EXIT_LOSS_EXCEEDED = 2
EXIT_CANCELLED = 3


@dataclass
class LatencyStats:
    samples: int = 0
    min_ms: float = 0.0
    mean_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    max_ms: float = 0.0

    @classmethod
    def from_seconds(cls, values: list[float]) -> LatencyStats:
        if not values:
            return cls()
        ms = sorted(v * 1000.0 for v in values)
        return cls(
            samples=len(ms),
            min_ms=ms[0],
            mean_ms=statistics.mean(ms),
            p50_ms=statistics.median(ms),
            p95_ms=ms[min(len(ms) - 1, int(len(ms) * 0.95))],
            p99_ms=ms[min(len(ms) - 1, int(len(ms) * 0.99))],
            max_ms=ms[-1],
        )


@dataclass
class PublisherReport:
    client_id: str
    connected: bool
    sent: int
    acked: int
    received: int
    errors: int
    latency: LatencyStats


@dataclass
class RunReport:
    run_id: str
    broker: str
    topic: str
    protocol: str
    qos: int
    publishers: int
    publishers_spawned: int
    repeat_count: int
    expected: int
    state: str
    cancelled: bool
    timed_out: bool
    fatal_error: str | None
    total_sent: int
    total_acked: int
    total_received: int
    duplicates: int
    foreign: int
    loss: int
    loss_pct: float
    max_loss_pct: float
    connect_failures: list[str]
    error_count: int
    elapsed_s: float
    publish_rate_msg_s: float
    latency: LatencyStats
    passed: bool
    exit_code: int
    per_publisher: list[PublisherReport] = field(default_factory=list)
    subscriber_errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self, *, indent: int | None = None) -> str:
        return json.dumps(self.to_dict(), indent=indent, separators=None if indent else (",", ":"))

    def summary(self) -> str:
        verdict = "PASS" if self.passed else "FAIL"
        lines = [
            f"[report] run {self.run_id}: {verdict} (exit {self.exit_code})",
            f"[report] sent={self.total_sent} acked={self.total_acked} received={self.total_received} "
            f"duplicates={self.duplicates} foreign={self.foreign} "
            f"loss={self.loss} ({self.loss_pct:.2f}%, max {self.max_loss_pct:g}%)",
            f"[report] publishers={self.publishers_spawned}/{self.publishers} "
            f"connect_failures={len(self.connect_failures)} errors={self.error_count} "
            f"elapsed={self.elapsed_s:.2f}s rate={self.publish_rate_msg_s:.1f} msg/s",
        ]
        if self.latency.samples:
            lat = self.latency
            lines.append(
                f"[report] latency ms: min={lat.min_ms:.2f} mean={lat.mean_ms:.2f} p50={lat.p50_ms:.2f} "
                f"p95={lat.p95_ms:.2f} p99={lat.p99_ms:.2f} max={lat.max_ms:.2f}"
            )
        return "\n".join(lines)

    def failure_cause(self) -> str | None:
        """One line describing why the run did not pass, or None."""
        if self.fatal_error:
            return f"session aborted: {self.fatal_error}"
        if self.connect_failures:
            return f"{len(self.connect_failures)} client(s) failed to connect: {', '.join(self.connect_failures[:5])}"
        if self.cancelled:
            return "run cancelled before completion"
        if self.exit_code == EXIT_LOSS_EXCEEDED:
            return f"loss {self.loss_pct:.2f}% exceeds threshold {self.max_loss_pct:g}%"
        return None


def build_report(session: Session) -> RunReport:
    if session.state is not SessionState.TERMINATED:
        raise ValueError(f"session not terminated (state={session.state.value})")

    cfg = session.config
    sub = session.subscriber
    pubs = session.publishers

    total_sent = sum(p.sent for p in pubs)
    total_acked = sum(p.acked for p in pubs)
    unique_received = sub.unique_received if sub is not None else 0
    loss = max(total_sent - unique_received, 0)
    loss_pct = (loss / total_sent * 100.0) if total_sent else 0.0

    connect_failures = [r.client_id for r in session.results() if r.connect_failed]
    fatal = session.fatal_error.cause if session.fatal_error is not None else None

    if fatal is not None or connect_failures:
        exit_code = EXIT_CONNECT_FAILURE
    elif session.cancelled:
        exit_code = EXIT_CANCELLED
    elif loss_pct > cfg.loss_threshold_pct:
        exit_code = EXIT_LOSS_EXCEEDED
    else:
        exit_code = EXIT_OK

    per_publisher = [_publisher_report(p, sub) for p in pubs]
    all_latencies: list[float] = []
    if sub is not None:
        for p in pubs:
            all_latencies.extend(sub.latencies_by_publisher.get(p.client_id, []))

    return RunReport(
        run_id=session.run_id,
        broker=f"{cfg.host}:{cfg.port}",
        topic=cfg.topic,
        protocol=cfg.protocol,
        qos=cfg.qos,
        publishers=cfg.publishers,
        publishers_spawned=session.publishers_spawned,
        repeat_count=cfg.repeat_count,
        expected=cfg.expected_messages,
        state=session.state.value,
        cancelled=session.cancelled,
        timed_out=session.timed_out,
        fatal_error=fatal,
        total_sent=total_sent,
        total_acked=total_acked,
        total_received=unique_received,
        duplicates=sub.duplicates if sub is not None else 0,
        foreign=sub.foreign if sub is not None else 0,
        loss=loss,
        loss_pct=loss_pct,
        max_loss_pct=cfg.loss_threshold_pct,
        connect_failures=connect_failures,
        error_count=sum(len(r.errors) for r in session.results()),
        elapsed_s=session.elapsed,
        publish_rate_msg_s=_publish_rate(session, total_sent),
        latency=LatencyStats.from_seconds(all_latencies),
        passed=exit_code == EXIT_OK,
        exit_code=exit_code,
        per_publisher=per_publisher,
        subscriber_errors=[e.to_message() for e in sub.errors] if sub is not None else [],
    )


def write_report(report: RunReport, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(report.to_json(indent=2))
        f.write("\n")


def _publisher_report(pub: RunResult, sub: RunResult | None) -> PublisherReport:
    received = sub.received_by_publisher.get(pub.client_id, 0) if sub is not None else 0
    latencies = sub.latencies_by_publisher.get(pub.client_id, []) if sub is not None else []
    return PublisherReport(
        client_id=pub.client_id,
        connected=pub.connected,
        sent=pub.sent,
        acked=pub.acked,
        received=received,
        errors=len(pub.errors),
        latency=LatencyStats.from_seconds(latencies),
    )


def _publish_rate(session: Session, total_sent: int) -> float:
    start = session.publishers_started_at
    end = session.publishers_finished_at
    if start is None or end is None or end <= start:
        return 0.0
    return total_sent / (end - start)
