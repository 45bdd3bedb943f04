import json
import os
import signal
import subprocess
import sys
import threading

import pytest

from conftest import FakeBroker
from mqtt_loadtest.app import build_parser, run, session_config_from_args
from mqtt_loadtest.report import EXIT_CANCELLED


def test_app_help_runs():
    proc = subprocess.run(
        [sys.executable, "-m", "mqtt_loadtest.app", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    out = proc.stdout + proc.stderr
    assert "main entrypoint" in out
    assert "run" in out


def test_run_help_runs():
    proc = subprocess.run(
        [sys.executable, "-m", "mqtt_loadtest.app", "run", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    out = proc.stdout + proc.stderr
    for flag in ("--broker", "--publishers", "--qos", "--repeat-delay", "--duration", "--protocol", "--grace"):
        assert flag in out


def test_args_to_session_config():
    args = build_parser().parse_args(
        [
            "run",
            "--broker", "mq.local:1884",
            "--topic", "bench/x",
            "--publishers", "50",
            "--qos", "1",
            "--repeat", "100",
            "--repeat-delay", "250",
            "--duration", "90",
            "--protocol", "5",
            "--payload-size", "16",
        ]
    )
    cfg = session_config_from_args(args)
    assert (cfg.host, cfg.port) == ("mq.local", 1884)
    assert cfg.publishers == 50
    assert cfg.qos == 1
    assert cfg.repeat_count == 100
    assert cfg.repeat_delay == pytest.approx(0.25)
    assert cfg.duration == 90
    assert cfg.protocol == "5"
    assert cfg.payload == "x" * 16
    assert cfg.grace == 30.0


def test_broker_from_environment(monkeypatch):
    monkeypatch.setenv("MQTT_LOADTEST_BROKER", "envhost:2883")
    args = build_parser().parse_args(["run"])
    cfg = session_config_from_args(args)
    assert (cfg.host, cfg.port) == ("envhost", 2883)


def test_invalid_protocol_is_usage_error():
    with pytest.raises(SystemExit) as exc:
        build_parser().parse_args(["run", "--protocol", "3"])
    assert exc.value.code == 2


def test_run_prints_report_and_returns_exit_code(capsys, tmp_path):
    args = build_parser().parse_args(
        ["run", "--publishers", "3", "--repeat", "5", "--grace", "1", "--output", str(tmp_path / "r.json")]
    )
    cfg = session_config_from_args(args)
    code = run(cfg, output=args.output, client_factory=FakeBroker().client, wait_slice=0.01)

    assert code == 0
    record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert record["total_sent"] == 15
    assert record["exit_code"] == 0
    assert json.loads((tmp_path / "r.json").read_text())["total_received"] == 15


def test_run_with_broker_down_exits_1(capsys):
    args = build_parser().parse_args(["run", "--publishers", "50"])
    code = run(session_config_from_args(args), client_factory=FakeBroker(down=True).client, wait_slice=0.01)
    assert code == 1
    captured = capsys.readouterr()
    assert "error: session aborted" in captured.err
    assert json.loads(captured.out.strip().splitlines()[-1])["publishers_spawned"] == 0


def test_run_interrupted_by_sigint_exits_cancelled(capsys):
    args = build_parser().parse_args(["run", "--publishers", "2", "--connect-timeout", "30"])
    cfg = session_config_from_args(args)
    timer = threading.Timer(0.1, os.kill, (os.getpid(), signal.SIGINT))
    timer.start()
    code = run(cfg, client_factory=FakeBroker(connack=None).client, wait_slice=0.01)
    timer.join()

    assert code == EXIT_CANCELLED
    captured = capsys.readouterr()
    assert "error: run cancelled" in captured.err
    record = json.loads(captured.out.strip().splitlines()[-1])
    assert record["cancelled"] is True
    assert record["passed"] is False
    assert record["publishers_spawned"] == 0
