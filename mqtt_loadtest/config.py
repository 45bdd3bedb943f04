"""Run configuration.

Three immutable records:
- `ClientConfig`: everything one Client Handle needs to open its connection.
- `PublishJob`: what a single publisher sends and how often.
- `SessionConfig`: the whole run, as parsed from the command line. It derives
  the per-client configs and the publish job.

All validation happens in `__post_init__` and raises `ValueError`, so the CLI
can turn bad input into a usage error before any connection is attempted.
"""

from __future__ import annotations

from dataclasses import dataclass

from .mqtt_topics import publisher_client_id, subscriber_client_id, validate_publish_topic

PROTOCOLS = ("3.1.1", "5")
TEARDOWN_ORDERS = ("subscriber-last", "subscriber-first")

DEFAULT_PORT = 1883
DEFAULT_GRACE_SECONDS = 30.0


def parse_broker(value: str) -> tuple[str, int]:
    """Split `HOST[:PORT]` into (host, port). Port defaults to 1883."""
    value = value.strip()
    if not value:
        raise ValueError("broker address must not be empty")

    # Bracketed IPv6 literal, e.g. [::1]:1883
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep:
            raise ValueError(f"invalid broker address: {value!r}")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif value.count(":") == 1:
        host, port_text = value.split(":", 1)
    else:
        host, port_text = value, ""

    if not host:
        raise ValueError(f"invalid broker address: {value!r}")
    if not port_text:
        return host, DEFAULT_PORT
    try:
        port = int(port_text)
    except ValueError as e:
        raise ValueError(f"invalid broker port: {port_text!r}") from e
    _check_port(port)
    return host, port


def _check_port(port: int) -> None:
    if not 0 < port < 65536:
        raise ValueError(f"broker port out of range: {port}")


def _check_qos(qos: int) -> None:
    if qos not in (0, 1, 2):
        raise ValueError(f"qos must be 0, 1 or 2, got {qos}")


@dataclass(frozen=True)
class ClientConfig:
    host: str
    port: int
    client_id: str
    protocol: str = "3.1.1"
    keepalive: int = 60
    clean_session: bool = True
    qos: int = 0
    connect_timeout: float = 10.0
    publish_timeout: float = 10.0

    def __post_init__(self) -> None:
        if not self.client_id:
            raise ValueError("client_id required")
        _check_port(self.port)
        _check_qos(self.qos)
        if self.protocol not in PROTOCOLS:
            raise ValueError(f"protocol must be one of {PROTOCOLS}, got {self.protocol!r}")
        if self.keepalive <= 0:
            raise ValueError("keepalive must be > 0")
        if self.connect_timeout <= 0 or self.publish_timeout <= 0:
            raise ValueError("timeouts must be > 0")


@dataclass(frozen=True)
class PublishJob:
    topic: str
    payload: str
    qos: int = 0
    repeat_count: int = 1
    repeat_delay: float = 0.0  # seconds

    def __post_init__(self) -> None:
        validate_publish_topic(self.topic)
        _check_qos(self.qos)
        if self.repeat_count < 0:
            raise ValueError("repeat_count must be >= 0")
        if self.repeat_delay < 0:
            raise ValueError("repeat_delay must be >= 0")


@dataclass(frozen=True)
class SessionConfig:
    host: str
    port: int
    topic: str
    publishers: int = 50
    qos: int = 0
    repeat_count: int = 1
    repeat_delay: float = 0.0  # seconds
    duration: float = 60.0
    protocol: str = "3.1.1"
    grace: float = DEFAULT_GRACE_SECONDS
    payload: str = "hello"
    keepalive: int = 60
    clean_session: bool = True
    client_id_prefix: str = "loadtest"
    connect_timeout: float = 10.0
    publish_timeout: float = 10.0
    teardown: str = "subscriber-last"
    max_loss_pct: float | None = None

    def __post_init__(self) -> None:
        validate_publish_topic(self.topic)
        _check_port(self.port)
        _check_qos(self.qos)
        if self.publishers <= 0:
            raise ValueError("publishers must be > 0")
        if self.repeat_count < 0:
            raise ValueError("repeat_count must be >= 0")
        if self.repeat_delay < 0:
            raise ValueError("repeat_delay must be >= 0")
        if self.duration <= 0:
            raise ValueError("duration must be > 0")
        if self.grace < 0:
            raise ValueError("grace must be >= 0")
        if self.protocol not in PROTOCOLS:
            raise ValueError(f"protocol must be one of {PROTOCOLS}, got {self.protocol!r}")
        if self.teardown not in TEARDOWN_ORDERS:
            raise ValueError(f"teardown must be one of {TEARDOWN_ORDERS}, got {self.teardown!r}")
        if self.max_loss_pct is not None and not 0 <= self.max_loss_pct <= 100:
            raise ValueError("max_loss_pct must be within [0, 100]")

    @property
    def expected_messages(self) -> int:
        return self.publishers * self.repeat_count

    @property
    def loss_threshold_pct(self) -> float:
        """Loss tolerated before the run fails.

        QoS 0 is at-most-once, so loss alone never fails it unless a threshold
        is given. QoS 1/2 must deliver everything.
        """
        if self.max_loss_pct is not None:
            return self.max_loss_pct
        return 100.0 if self.qos == 0 else 0.0

    def publish_job(self) -> PublishJob:
        return PublishJob(
            topic=self.topic,
            payload=self.payload,
            qos=self.qos,
            repeat_count=self.repeat_count,
            repeat_delay=self.repeat_delay,
        )

    def subscriber_config(self, run_id: str) -> ClientConfig:
        return self._client_config(subscriber_client_id(self.client_id_prefix, run_id))

    def publisher_config(self, run_id: str, index: int) -> ClientConfig:
        return self._client_config(publisher_client_id(self.client_id_prefix, run_id, index))

    def _client_config(self, client_id: str) -> ClientConfig:
        return ClientConfig(
            host=self.host,
            port=self.port,
            client_id=client_id,
            protocol=self.protocol,
            keepalive=self.keepalive,
            clean_session=self.clean_session,
            qos=self.qos,
            connect_timeout=self.connect_timeout,
            publish_timeout=self.publish_timeout,
        )
