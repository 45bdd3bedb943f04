"""Client Handle: one MQTT connection built on top of paho-mqtt.

Why this exists:
- paho-mqtt is callback-based; a load test wants *blocking* connect/subscribe
  and, at QoS 1/2, blocking publish-until-acknowledged.
- every outcome (sent, acked, received, errors) has to land in exactly one
  RunResult so the report can be computed without locks afterwards.

Design:
- `ClientHandle` owns a paho client and its background network loop
  (`loop_start()`), plus the `RunResult` for this connection.
- paho callbacks run on the network thread. They only touch handle state under
  `self._lock` and signal waiters through events / a condition.
- every blocking wait is sliced so a shared cancellation event is observed
  within `wait_slice` seconds.
- `disconnect()` is idempotent and never raises.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

import paho.mqtt.client as mqtt
from paho.mqtt.client import CallbackAPIVersion

from . import envelope
from .config import ClientConfig, PublishJob
from .errors import ConnectError, DisconnectError, ErrorRecord, LoadTestError, PublishError, SubscribeError
from .mqtt_topics import validate_topic_filter
from .result import RunResult

logger = logging.getLogger(__name__)

# CONNACK reason code for "Unsupported Protocol Version". paho maps the 3.1.1
# return code 1 ("unacceptable protocol version") onto the same value.
UNSUPPORTED_PROTOCOL_VERSION = 0x84

ClientFactory = Callable[[ClientConfig], Any]


def paho_client(config: ClientConfig) -> mqtt.Client:
    """Build the paho client for `config` (not yet connected)."""
    if config.protocol == "5":
        return mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv5,
        )
    # clean_session only exists in 3.1.1; v5 uses clean_start on connect().
    return mqtt.Client(
        callback_api_version=CallbackAPIVersion.VERSION2,
        client_id=config.client_id,
        clean_session=config.clean_session,
        protocol=mqtt.MQTTv311,
    )


class _Cancelled(Exception):
    pass


def _reason_value(reason_code: Any) -> int:
    return int(getattr(reason_code, "value", reason_code))


def _is_failure(reason_code: Any) -> bool:
    return _reason_value(reason_code) >= 0x80


class ClientHandle:
    """One publisher or subscriber connection and its RunResult."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        role: str,
        cancel: threading.Event | None = None,
        client_factory: ClientFactory = paho_client,
        wait_slice: float = 0.1,
        source_prefix: str | None = None,
    ) -> None:
        self.config = config
        # Receipts from publishers whose id lacks this prefix count as foreign.
        self.source_prefix = source_prefix
        self.result = RunResult(client_id=config.client_id, role=role)
        self._cancel = cancel or threading.Event()
        self._wait_slice = wait_slice

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._connack = threading.Event()
        self._connect_error: str | None = None
        self._suback: dict[int, list[Any]] = {}
        self._publish_rejects: dict[int, str] = {}

        self._connected = False
        self._disconnecting = False
        self._closed = False
        self._loop_started = False

        self._client = client_factory(config)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_subscribe = self._on_subscribe
        self._client.on_publish = self._on_publish
        self._client.on_message = self._on_message

    @property
    def client_id(self) -> str:
        return self.config.client_id

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    @property
    def is_closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def unique_received(self) -> int:
        with self._lock:
            return self.result.unique_received

    # -------------------- operations --------------------

    def connect(self) -> None:
        """Connect and start the background network loop.

        Returns once the broker accepted the connection. Raises ConnectError
        otherwise; the error is also recorded in the RunResult.
        """
        with self._lock:
            closed, connected = self._closed, self._connected
        if closed:
            raise ConnectError("handle already disconnected")
        if connected:
            return

        cfg = self.config
        try:
            if cfg.protocol == "5":
                self._client.connect(cfg.host, cfg.port, keepalive=cfg.keepalive, clean_start=cfg.clean_session)
            else:
                self._client.connect(cfg.host, cfg.port, keepalive=cfg.keepalive)
        except OSError as e:
            raise self._fail(ConnectError(f"network unreachable: {cfg.host}:{cfg.port}: {e}")) from e

        self._client.loop_start()
        self._loop_started = True

        try:
            acked = self._wait(self._connack.is_set, self._connack.wait, cfg.connect_timeout)
        except _Cancelled:
            self._stop_loop()
            raise self._fail(ConnectError("cancelled while connecting")) from None
        if not acked:
            self._stop_loop()
            raise self._fail(ConnectError(f"connect timeout after {cfg.connect_timeout}s"))

        with self._lock:
            error = self._connect_error
        if error is not None:
            self._stop_loop()
            raise self._fail(ConnectError(error))

        with self._lock:
            if not self.result.closed:
                self.result.record_connected()
        logger.debug("[%s] connected to %s:%s (MQTT %s)", self.client_id, cfg.host, cfg.port, cfg.protocol)

    def subscribe(self, topic: str, qos: int) -> None:
        """Subscribe and wait for the SUBACK. Raises SubscribeError."""
        validate_topic_filter(topic)
        if not self.is_connected:
            raise self._fail(SubscribeError("not connected"))

        try:
            rc, mid = self._client.subscribe(topic, qos=qos)
        except ValueError as e:
            raise self._fail(SubscribeError(f"invalid subscription: {e}")) from e
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise self._fail(SubscribeError(f"subscribe failed: {mqtt.error_string(rc)}"))

        def done() -> bool:
            return mid in self._suback

        def wait(timeout: float) -> None:
            with self._cond:
                if not done():
                    self._cond.wait(timeout)

        try:
            acked = self._wait(done, wait, self.config.connect_timeout)
        except _Cancelled:
            raise self._fail(SubscribeError("cancelled while subscribing")) from None
        if not acked:
            raise self._fail(SubscribeError(f"no SUBACK for {topic!r} within {self.config.connect_timeout}s"))

        with self._lock:
            codes = self._suback.pop(mid)
        refused = [c for c in codes if _is_failure(c)]
        if refused:
            raise self._fail(SubscribeError(f"subscription to {topic!r} refused: {refused[0]}"))
        logger.debug("[%s] subscribed to %s (qos=%s)", self.client_id, topic, qos)

    def publish(self, job: PublishJob, seq: int) -> None:
        """Publish repetition `seq` of `job`, wrapped in a message envelope."""
        payload = envelope.encode(publisher=self.client_id, seq=seq, body=job.payload)
        self.publish_payload(job.topic, payload, job.qos)

    def publish_payload(self, topic: str, payload: bytes | str, qos: int) -> None:
        """Publish one message.

        QoS 0 returns as soon as paho accepted the message: "sent", not
        delivered. QoS 1/2 blocks until PUBACK/PUBCOMP or `publish_timeout`.
        Raises PublishError; the error is also recorded in the RunResult.
        """
        if not self.is_connected:
            raise self._fail(PublishError("not connected"))

        try:
            info = self._client.publish(topic, payload, qos=qos)
        except ValueError as e:
            raise self._fail(PublishError(f"invalid publish: {e}")) from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise self._fail(PublishError(f"publish failed: {mqtt.error_string(info.rc)}"))

        with self._lock:
            closed = self._closed
            if not closed:
                self.result.record_sent()
        if closed:
            raise PublishError("handle disconnected during publish")
        if qos == 0:
            return

        try:
            acked = self._wait(info.is_published, lambda t: info.wait_for_publish(timeout=t), self.config.publish_timeout)
        except _Cancelled:
            raise self._fail(PublishError(f"cancelled awaiting ack for mid={info.mid}")) from None
        if not acked:
            raise self._fail(PublishError(f"publish timeout for mid={info.mid} after {self.config.publish_timeout}s"))

        with self._lock:
            reject = self._publish_rejects.pop(info.mid, None)
        if reject is not None:
            raise self._fail(PublishError(f"broker rejected mid={info.mid}: {reject}"))

        with self._lock:
            if not self.result.closed:
                self.result.record_acked()

    def disconnect(self) -> None:
        """Disconnect and stop the network loop. Idempotent, never raises.

        Failures are logged and recorded as DisconnectError records. The
        RunResult is read-only afterwards.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._disconnecting = True
            was_connected = self._connected
            self._connected = False

        try:
            if was_connected:
                rc = self._client.disconnect()
                if rc not in (None, mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
                    self._record_disconnect_error(f"disconnect returned {mqtt.error_string(rc)}")
        except Exception as e:
            self._record_disconnect_error(f"disconnect failed: {e}")
        finally:
            if self._loop_started:
                try:
                    self._client.loop_stop()
                except Exception as e:
                    self._record_disconnect_error(f"network loop did not stop cleanly: {e}")
                self._loop_started = False
            with self._lock:
                self.result.close()
        logger.debug("[%s] disconnected", self.client_id)

    def record_error(self, error: ErrorRecord | LoadTestError) -> None:
        """Append an error on behalf of the owner while the handle is still open."""
        with self._lock:
            if not self.result.closed:
                self.result.record_error(error)

    # -------------------- internals --------------------

    def _wait(self, done: Callable[[], bool], wait: Callable[[float], Any], timeout: float) -> bool:
        """Wait for `done()` in slices, observing cancellation.

        Returns False on timeout, raises _Cancelled when cancelled first.
        """
        deadline = time.monotonic() + timeout
        while not done():
            if self._cancel.is_set():
                raise _Cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait(min(self._wait_slice, remaining))
        return True

    def _is_own(self, publisher: str) -> bool:
        return self.source_prefix is None or publisher.startswith(self.source_prefix)

    def _stop_loop(self) -> None:
        # A refused or stalled connect must not leave paho retrying in the background.
        if self._loop_started:
            self._client.loop_stop()
            self._loop_started = False

    def _fail(self, error: LoadTestError) -> LoadTestError:
        # A cancelled connect is an abort, not a broker/network failure.
        if isinstance(error, ConnectError) and not self._cancel.is_set():
            with self._lock:
                if not self.result.closed:
                    self.result.record_connect_failed()
        self.record_error(error)
        logger.debug("[%s] %s error: %s", self.client_id, error.kind, error.cause)
        return error

    def _record_disconnect_error(self, cause: str) -> None:
        error = DisconnectError(cause)
        logger.warning("[%s] %s", self.client_id, cause)
        self.record_error(error)

    # -------------------- paho callbacks (network thread) --------------------

    def _on_connect(self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        with self._lock:
            if self._closed:
                return
            if _is_failure(reason_code):
                if _reason_value(reason_code) == UNSUPPORTED_PROTOCOL_VERSION:
                    self._connect_error = f"protocol version mismatch: broker refused MQTT {self.config.protocol}"
                else:
                    self._connect_error = f"broker refused connection: {reason_code}"
            else:
                self._connect_error = None
                self._connected = True
        self._connack.set()

    def _on_disconnect(
        self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        with self._lock:
            if self._disconnecting:
                return
            if not self._connack.is_set():
                self._connect_error = f"connection closed during handshake: {reason_code}"
                self._connack.set()
                return
            self._connected = False
            if not self.result.closed:
                self.result.record_error(ErrorRecord(cause=f"unexpected disconnect: {reason_code}", kind="connect"))
        logger.warning("[%s] unexpected disconnect: %s", self.client_id, reason_code)

    def _on_subscribe(
        self, client: Any, userdata: Any, mid: int, reason_code_list: list[Any], properties: Any = None
    ) -> None:
        with self._cond:
            self._suback[mid] = list(reason_code_list)
            self._cond.notify_all()

    def _on_publish(self, client: Any, userdata: Any, mid: int, reason_code: Any, properties: Any = None) -> None:
        if not _is_failure(reason_code):
            return
        with self._lock:
            self._publish_rejects[mid] = str(reason_code)

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        received_at = time.time()
        env = envelope.decode(msg.payload)
        with self._lock:
            if self.result.closed:
                return
            if env is None or not self._is_own(env.publisher):
                self.result.record_foreign()
            else:
                self.result.record_receipt(
                    received_at=received_at,
                    publisher=env.publisher,
                    seq=env.seq,
                    sent_at=env.sent_at,
                )
