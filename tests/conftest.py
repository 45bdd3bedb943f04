"""In-memory stand-in for a broker and paho clients.

`FakeBroker.client` has the same signature as `mqtt_client.paho_client`, so it
can be passed as `client_factory` to ClientHandle / SessionOrchestrator.
Delivery is synchronous: a publish reaches every matching subscriber before
`publish()` returns.
"""

from __future__ import annotations

import itertools
import threading
from types import SimpleNamespace

import pytest

from mqtt_loadtest.config import ClientConfig, SessionConfig


class FakeInfo:
    def __init__(self, mid: int, rc: int = 0) -> None:
        self.mid = mid
        self.rc = rc
        self._published = threading.Event()

    def set_published(self) -> None:
        self._published.set()

    def is_published(self) -> bool:
        return self._published.is_set()

    def wait_for_publish(self, timeout: float | None = None) -> None:
        self._published.wait(timeout)


class FakeClient:
    def __init__(self, broker: FakeBroker, config: ClientConfig) -> None:
        self.broker = broker
        self.config = config
        self.on_connect = None
        self.on_disconnect = None
        self.on_subscribe = None
        self.on_publish = None
        self.on_message = None

        self.connected = False
        self.loop_running = False
        self.connect_kwargs: dict = {}
        self.disconnect_calls = 0
        self.loop_stop_calls = 0
        self._mids = itertools.count(1)

    # paho API surface used by ClientHandle

    def connect(self, host, port, keepalive=60, **kwargs):
        self.connect_kwargs = {"host": host, "port": port, "keepalive": keepalive, **kwargs}
        if self.broker.down:
            raise ConnectionRefusedError(111, "Connection refused")
        return 0

    def loop_start(self):
        self.loop_running = True
        code = self.broker.connack_for(self.config.client_id)
        if code is None:
            return  # never answers
        self.connected = int(getattr(code, "value", code)) == 0
        self.on_connect(self, None, {}, code, None)

    def loop_stop(self):
        self.loop_stop_calls += 1
        self.loop_running = False

    def subscribe(self, topic, qos=0):
        mid = next(self._mids)
        if self.broker.refuse_subscribe:
            codes = [0x80]
        else:
            self.broker.add_subscription(topic, self)
            codes = [qos]
        self.on_subscribe(self, None, mid, codes, None)
        return 0, mid

    def publish(self, topic, payload=None, qos=0):
        info = FakeInfo(next(self._mids))
        self.broker.route(topic, payload, qos)
        if qos == 0:
            info.set_published()
        elif self.broker.ack:
            self.on_publish(self, None, info.mid, 0, None)
            info.set_published()
        return info

    def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False
        self.broker.record_disconnect(self.config.client_id)
        return 0

    # broker side

    def deliver(self, topic, payload, qos):
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload, qos=qos))


class FakeBroker:
    def __init__(
        self,
        *,
        down: bool = False,
        connack: int | None = 0,
        refuse_client_ids: tuple[str, ...] = (),
        refuse_subscribe: bool = False,
        ack: bool = True,
        drop_every: int = 0,
    ) -> None:
        self.down = down
        self.connack = connack
        self.refuse_client_ids = refuse_client_ids
        self.refuse_subscribe = refuse_subscribe
        self.ack = ack
        self.drop_every = drop_every

        self._lock = threading.Lock()
        self.clients: list[FakeClient] = []
        self.subscriptions: list[tuple[str, FakeClient]] = []
        self.disconnect_order: list[str] = []
        self.routed = 0

    def client(self, config: ClientConfig) -> FakeClient:
        c = FakeClient(self, config)
        with self._lock:
            self.clients.append(c)
        return c

    def connack_for(self, client_id: str):
        if any(client_id.endswith(suffix) for suffix in self.refuse_client_ids):
            return 0x87  # not authorized
        return self.connack

    def add_subscription(self, topic: str, client: FakeClient) -> None:
        with self._lock:
            self.subscriptions.append((topic, client))

    def route(self, topic, payload, qos) -> None:
        with self._lock:
            self.routed += 1
            n = self.routed
            targets = [c for t, c in self.subscriptions if t == topic]
        if self.drop_every and n % self.drop_every == 0:
            return
        for c in targets:
            c.deliver(topic, payload, qos)

    def record_disconnect(self, client_id: str) -> None:
        with self._lock:
            self.disconnect_order.append(client_id)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(host="127.0.0.1", port=1883, client_id="test-client", connect_timeout=0.5, publish_timeout=0.2)


@pytest.fixture
def make_config():
    return session_config


def session_config(**overrides) -> SessionConfig:
    values = dict(
        host="127.0.0.1",
        port=1883,
        topic="bench/test",
        publishers=3,
        qos=0,
        repeat_count=5,
        repeat_delay=0.0,
        duration=10.0,
        grace=1.0,
        connect_timeout=0.5,
        publish_timeout=0.2,
    )
    values.update(overrides)
    return SessionConfig(**values)
