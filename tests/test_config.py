import pytest

import mqtt_loadtest.config as config_module
from mqtt_loadtest.config import ClientConfig, PublishJob, SessionConfig, parse_broker


def test_parse_broker_host_and_port():
    assert parse_broker("localhost:1883") == ("localhost", 1883)
    assert parse_broker("10.0.0.5:8883") == ("10.0.0.5", 8883)


def test_parse_broker_default_port():
    assert parse_broker("broker.local") == ("broker.local", 1883)


def test_parse_broker_ipv6():
    assert parse_broker("[::1]:1884") == ("::1", 1884)
    assert parse_broker("[::1]") == ("::1", 1883)


@pytest.mark.parametrize("value", ["", ":1883", "host:notaport", "host:0", "host:70000", "[::1"])
def test_parse_broker_rejects_invalid(value):
    with pytest.raises(ValueError):
        parse_broker(value)


def test_client_config_rejects_bad_qos_and_protocol():
    with pytest.raises(ValueError):
        ClientConfig(host="h", port=1883, client_id="c", qos=3)
    with pytest.raises(ValueError):
        ClientConfig(host="h", port=1883, client_id="c", protocol="3.1")
    with pytest.raises(ValueError):
        ClientConfig(host="h", port=1883, client_id="")


def test_publish_job_is_immutable():
    job = PublishJob(topic="t", payload="x", qos=1, repeat_count=3, repeat_delay=0.5)
    with pytest.raises(AttributeError):
        job.repeat_count = 4  # type: ignore[misc]


def test_publish_job_rejects_wildcard_topic():
    with pytest.raises(ValueError):
        PublishJob(topic="t/#", payload="x")


def test_session_config_derives_unique_client_configs(make_config):
    cfg = make_config(publishers=50, client_id_prefix="lt")
    ids = {cfg.subscriber_config("r1").client_id}
    ids |= {cfg.publisher_config("r1", i).client_id for i in range(cfg.publishers)}
    assert len(ids) == 51
    assert cfg.publisher_config("r1", 0).qos == cfg.qos


def test_session_config_publish_job(make_config):
    cfg = make_config(qos=2, repeat_count=100, repeat_delay=0.01, payload="abc")
    job = cfg.publish_job()
    assert (job.topic, job.payload, job.qos, job.repeat_count, job.repeat_delay) == ("bench/test", "abc", 2, 100, 0.01)
    assert cfg.expected_messages == 300


def test_loss_threshold_defaults_by_qos(make_config):
    assert make_config(qos=0).loss_threshold_pct == 100.0
    assert make_config(qos=1).loss_threshold_pct == 0.0
    assert make_config(qos=2).loss_threshold_pct == 0.0
    assert make_config(qos=0, max_loss_pct=5.0).loss_threshold_pct == 5.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"publishers": 0},
        {"duration": 0},
        {"grace": -1},
        {"repeat_delay": -0.1},
        {"teardown": "random"},
        {"max_loss_pct": 101},
        {"topic": "a/+"},
    ],
)
def test_session_config_validation(make_config, overrides):
    with pytest.raises(ValueError):
        make_config(**overrides)


def test_module_docstring_is_kept():
    assert config_module.__doc__.startswith("Run configuration.")
