from __future__ import annotations

# The Session Orchestrator owns one load-test run from start to teardown.
#
# State machine:
#
#   IDLE -> SUBSCRIBER_STARTING -> SUBSCRIBER_READY -> PUBLISHERS_RUNNING
#        -> DRAINING -> TERMINATED
#
# - A subscriber that cannot connect or subscribe ends the run right away
#   (SUBSCRIBER_STARTING -> TERMINATED); no publisher is started.
# - Publishers run concurrently, one thread each, only after the subscriber
#   is ready.
# - DRAINING starts when every publisher finished or `duration` elapsed.
#   The subscriber then gets up to `grace` seconds to catch up.
# - `cancel()` at any point skips straight to DRAINING (without grace) and
#   TERMINATED through the same teardown path.
#
# The subscriber only counts messages from this run's publishers; other
# traffic on the topic is tallied as foreign and never offsets loss.
#
# Every handle is disconnected in `_teardown()`, which runs on every path.
# Each thread writes only to its own handle's RunResult; the Session is read
# after all publisher threads are joined and all handles are closed.

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .config import ClientConfig, PublishJob, SessionConfig
from .errors import ConnectError, ErrorRecord, LoadTestError, PublishError, SubscribeError
from .mqtt_client import ClientFactory, ClientHandle, paho_client
from .mqtt_topics import new_run_id, publisher_id_prefix
from .rate import RateController
from .result import ROLE_PUBLISHER, ROLE_SUBSCRIBER, RunResult

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    SUBSCRIBER_STARTING = "subscriber_starting"
    SUBSCRIBER_READY = "subscriber_ready"
    PUBLISHERS_RUNNING = "publishers_running"
    DRAINING = "draining"
    TERMINATED = "terminated"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.SUBSCRIBER_STARTING, SessionState.DRAINING}),
    SessionState.SUBSCRIBER_STARTING: frozenset(
        {SessionState.SUBSCRIBER_READY, SessionState.DRAINING, SessionState.TERMINATED}
    ),
    SessionState.SUBSCRIBER_READY: frozenset({SessionState.PUBLISHERS_RUNNING, SessionState.DRAINING}),
    SessionState.PUBLISHERS_RUNNING: frozenset({SessionState.DRAINING}),
    SessionState.DRAINING: frozenset({SessionState.TERMINATED}),
    SessionState.TERMINATED: frozenset(),
}


@dataclass
class Session:
    """Everything one run produced. Read it only once `state` is TERMINATED."""

    run_id: str
    config: SessionConfig
    state: SessionState = SessionState.IDLE
    history: list[SessionState] = field(default_factory=lambda: [SessionState.IDLE])
    subscriber: RunResult | None = None
    publishers: list[RunResult] = field(default_factory=list)
    fatal_error: ErrorRecord | None = None
    cancelled: bool = False
    timed_out: bool = False
    started_at: float = 0.0
    publishers_started_at: float | None = None
    publishers_finished_at: float | None = None
    ended_at: float = 0.0

    @property
    def publishers_spawned(self) -> int:
        return len(self.publishers)

    @property
    def elapsed(self) -> float:
        return max(0.0, self.ended_at - self.started_at)

    def results(self) -> list[RunResult]:
        out = [self.subscriber] if self.subscriber is not None else []
        return out + list(self.publishers)


class SessionOrchestrator:
    """Runs one session. Not reusable: create a new orchestrator per run."""

    def __init__(
        self,
        config: SessionConfig,
        *,
        run_id: str | None = None,
        client_factory: ClientFactory = paho_client,
        wait_slice: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.session = Session(run_id=run_id or new_run_id(), config=config)
        self._client_factory = client_factory
        self._wait_slice = wait_slice
        self._clock = clock

        # `_cancel` aborts the whole session; `_stop_publishers` only ends the
        # publisher phase (timeout) so draining can still happen.
        self._cancel = threading.Event()
        self._stop_publishers = threading.Event()
        self._state_lock = threading.Lock()

        self._subscriber: ClientHandle | None = None
        self._publishers: list[ClientHandle] = []
        self._threads: list[threading.Thread] = []

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self.session.state

    # -------------------- public API --------------------

    def cancel(self) -> None:
        """Abort the session from any thread (e.g. a signal handler).

        Takes no locks: a signal handler runs on the main thread, which may
        already hold `_state_lock`.
        """
        if not self._cancel.is_set():
            logger.info("[orchestrator] cancellation requested in state %s", self.session.state.value)
        self.session.cancelled = True
        self._cancel.set()
        self._stop_publishers.set()

    def run(self) -> Session:
        """Run the session to TERMINATED and return it."""
        with self._state_lock:
            if self.session.state is not SessionState.IDLE:
                raise RuntimeError("a session can only be run once")

        s = self.session
        s.started_at = self._clock()
        logger.info(
            "[orchestrator] run %s: %d publishers -> %s:%s topic=%s qos=%d repeat=%d",
            s.run_id,
            self.config.publishers,
            self.config.host,
            self.config.port,
            self.config.topic,
            self.config.qos,
            self.config.repeat_count,
        )

        try:
            if not self._cancel.is_set():
                self._transition(SessionState.SUBSCRIBER_STARTING)
                if self._start_subscriber():
                    self._transition(SessionState.SUBSCRIBER_READY)
                    if not self._cancel.is_set():
                        self._transition(SessionState.PUBLISHERS_RUNNING)
                        self._run_publishers()
            if s.fatal_error is None:
                self._transition(SessionState.DRAINING)
                self._drain()
        finally:
            if SessionState.TERMINATED not in _TRANSITIONS[self.state]:
                # Unexpected exception mid-run: still go through DRAINING.
                self._transition(SessionState.DRAINING)
            self._teardown()
            s.ended_at = self._clock()
            self._transition(SessionState.TERMINATED)
            logger.info("[orchestrator] run %s terminated after %.2fs", s.run_id, s.elapsed)
        return s

    # -------------------- phases --------------------

    def _start_subscriber(self) -> bool:
        cfg = self.config
        run_id = self.session.run_id
        handle = self._new_handle(
            cfg.subscriber_config(run_id),
            ROLE_SUBSCRIBER,
            self._cancel,
            source_prefix=publisher_id_prefix(cfg.client_id_prefix, run_id),
        )
        self._subscriber = handle
        self.session.subscriber = handle.result
        try:
            handle.connect()
            handle.subscribe(cfg.topic, cfg.qos)
        except (ConnectError, SubscribeError) as e:
            if self._cancel.is_set():
                logger.info("[orchestrator] subscriber start aborted: %s", e.cause)
                return False
            self._fatal(e)
            return False
        logger.info("[orchestrator] subscriber %s ready on %s", handle.client_id, cfg.topic)
        return True

    def _run_publishers(self) -> None:
        cfg = self.config
        job = cfg.publish_job()
        s = self.session
        s.publishers_started_at = self._clock()

        for i in range(cfg.publishers):
            if self._stop_publishers.is_set():
                break
            handle = self._new_handle(cfg.publisher_config(s.run_id, i), ROLE_PUBLISHER, self._stop_publishers)
            self._publishers.append(handle)
            s.publishers.append(handle.result)
            t = threading.Thread(
                target=self._publisher_task,
                args=(handle, job),
                name=f"publisher-{i}",
                daemon=True,
            )
            self._threads.append(t)
            t.start()
        logger.info("[orchestrator] %d publishers started", len(self._threads))

        deadline = s.started_at + cfg.duration
        while any(t.is_alive() for t in self._threads):
            if self._cancel.is_set():
                break
            if self._clock() >= deadline:
                s.timed_out = True
                logger.warning("[orchestrator] duration of %ss elapsed with publishers still running", cfg.duration)
                break
            self._join_slice()

        self._stop_publishers.set()
        self._join_publishers()
        s.publishers_finished_at = self._clock()

    def _publisher_task(self, handle: ClientHandle, job: PublishJob) -> None:
        try:
            handle.connect()
        except ConnectError as e:
            logger.warning("[%s] connect failed: %s", handle.client_id, e.cause)
            return

        rate = RateController(
            repeat_count=job.repeat_count,
            repeat_delay=job.repeat_delay,
            cancel=self._stop_publishers,
        )
        for seq in rate:
            try:
                handle.publish(job, seq)
            except PublishError as e:
                # Already recorded by the handle; carry on with the next repetition.
                logger.debug("[%s] publish %d failed: %s", handle.client_id, seq, e.cause)
        logger.debug("[%s] publisher finished (sent=%d)", handle.client_id, handle.result.sent)

    def _drain(self) -> None:
        sub = self._subscriber
        if sub is None:
            return

        expected = sum(r.sent for r in self.session.publishers)
        if sub.is_connected and not self._cancel.is_set() and self.config.grace > 0:
            logger.info("[orchestrator] draining: waiting up to %ss for %d messages", self.config.grace, expected)
            deadline = self._clock() + self.config.grace
            while sub.unique_received < expected and not self._cancel.is_set():
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                self._cancel.wait(min(self._wait_slice, remaining))

        outstanding = expected - sub.unique_received
        if outstanding > 0:
            logger.warning("[orchestrator] %d messages undelivered at drain", outstanding)
            sub.record_error(ErrorRecord(cause=f"undelivered at drain: {outstanding}", kind="drain"))

    def _teardown(self) -> None:
        # Threads still alive here did not react to cancellation in time; their
        # handles are disconnected anyway and further publishes fail fast.
        self._stop_publishers.set()
        for t in self._threads:
            if t.is_alive():
                logger.warning("[orchestrator] %s still running at teardown", t.name)

        handles = list(self._publishers)
        if self._subscriber is not None:
            if self.config.teardown == "subscriber-first":
                handles.insert(0, self._subscriber)
            else:
                handles.append(self._subscriber)
        for h in handles:
            h.disconnect()
        logger.debug("[orchestrator] %d handles disconnected", len(handles))

    # -------------------- helpers --------------------

    def _new_handle(
        self, config: ClientConfig, role: str, cancel: threading.Event, source_prefix: str | None = None
    ) -> ClientHandle:
        return ClientHandle(
            config,
            role=role,
            cancel=cancel,
            client_factory=self._client_factory,
            wait_slice=self._wait_slice,
            source_prefix=source_prefix,
        )

    def _join_slice(self) -> None:
        for t in self._threads:
            if t.is_alive():
                t.join(self._wait_slice)
                return

    def _join_publishers(self) -> None:
        # Cancellation is observed within one wait slice; a thread stuck in a
        # socket connect is bounded by the connect timeout.
        limit = self._clock() + self.config.connect_timeout + self._wait_slice
        for t in self._threads:
            remaining = limit - self._clock()
            if remaining <= 0:
                break
            t.join(remaining)

    def _fatal(self, error: LoadTestError) -> None:
        logger.error("[orchestrator] session aborted: %s", error.cause)
        self.session.fatal_error = error.to_record()

    def _transition(self, new: SessionState) -> None:
        with self._state_lock:
            old = self.session.state
            if new not in _TRANSITIONS[old]:
                raise RuntimeError(f"illegal session transition {old.value} -> {new.value}")
            self.session.state = new
            self.session.history.append(new)
        logger.debug("[orchestrator] %s -> %s", old.value, new.value)
