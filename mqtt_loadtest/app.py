from __future__ import annotations

# Command-line entrypoint.
#
#   python -m mqtt_loadtest.app run --broker localhost:1883 --topic bench/t \
#       --publishers 50 --qos 0 --repeat 100 --repeat-delay 0 --duration 60
#
# Prints one JSON report record on stdout. Exit code 0 = pass, 1 = a client
# failed to connect (or the subscriber aborted the run), 2 = loss threshold
# exceeded, 3 = cancelled by Ctrl+C / SIGTERM (a report is still produced).

import argparse
import logging
import os
import signal
import sys
from typing import Any

from .config import DEFAULT_GRACE_SECONDS, PROTOCOLS, TEARDOWN_ORDERS, SessionConfig, parse_broker
from .envelope import make_body
from .orchestrator import SessionOrchestrator
from .report import build_report, write_report

logger = logging.getLogger(__name__)

BROKER_ENV = "MQTT_LOADTEST_BROKER"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MQTT load-test harness - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run 1 subscriber + N publishers against a broker and report")
    p_run.add_argument(
        "--broker",
        default=os.environ.get(BROKER_ENV, "localhost:1883"),
        help=f"HOST:PORT (default: ${BROKER_ENV} or localhost:1883)",
    )
    p_run.add_argument("--topic", default="loadtest/topic")
    p_run.add_argument("--publishers", type=int, default=50, help="number of concurrent publishers")
    p_run.add_argument("--qos", type=int, choices=(0, 1, 2), default=0)
    p_run.add_argument("--repeat", type=int, default=1, help="messages per publisher")
    p_run.add_argument("--repeat-delay", type=float, default=0.0, help="milliseconds between messages")
    p_run.add_argument("--duration", type=float, default=60.0, help="max seconds for the publisher phase")
    p_run.add_argument("--protocol", choices=PROTOCOLS, default="3.1.1")
    p_run.add_argument(
        "--grace",
        type=float,
        default=DEFAULT_GRACE_SECONDS,
        help="seconds the subscriber may keep draining after publishers finish",
    )

    body = p_run.add_mutually_exclusive_group()
    body.add_argument("--payload", default=None, help="message body text")
    body.add_argument("--payload-size", type=int, default=None, help="message body of N filler bytes")

    p_run.add_argument("--keepalive", type=int, default=60)
    p_run.add_argument("--no-clean-session", dest="clean_session", action="store_false")
    p_run.add_argument("--client-id-prefix", default="loadtest")
    p_run.add_argument("--connect-timeout", type=float, default=10.0)
    p_run.add_argument("--publish-timeout", type=float, default=10.0, help="ack timeout at QoS 1/2")
    p_run.add_argument("--teardown", choices=TEARDOWN_ORDERS, default="subscriber-last")
    p_run.add_argument(
        "--max-loss-pct",
        type=float,
        default=None,
        help="fail (exit 2) above this loss; default 100 at QoS 0, 0 at QoS 1/2",
    )
    p_run.add_argument("--output", default=None, help="also write the JSON report to this file")
    p_run.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    return parser


def session_config_from_args(args: argparse.Namespace) -> SessionConfig:
    host, port = parse_broker(args.broker)
    if args.payload_size is not None:
        payload = make_body(args.payload_size)
    elif args.payload is not None:
        payload = args.payload
    else:
        payload = "hello"

    return SessionConfig(
        host=host,
        port=port,
        topic=args.topic,
        publishers=args.publishers,
        qos=args.qos,
        repeat_count=args.repeat,
        repeat_delay=args.repeat_delay / 1000.0,
        duration=args.duration,
        protocol=args.protocol,
        grace=args.grace,
        payload=payload,
        keepalive=args.keepalive,
        clean_session=args.clean_session,
        client_id_prefix=args.client_id_prefix,
        connect_timeout=args.connect_timeout,
        publish_timeout=args.publish_timeout,
        teardown=args.teardown,
        max_loss_pct=args.max_loss_pct,
    )


def run(config: SessionConfig, *, output: str | None = None, **orchestrator_kwargs: Any) -> int:
    """Run one session, print the report and return the exit code."""
    orchestrator = SessionOrchestrator(config, **orchestrator_kwargs)

    def _on_signal(signum: int, frame: Any) -> None:
        logger.warning("received signal %s, cancelling", signum)
        orchestrator.cancel()

    previous = _install_signal_handlers(_on_signal)
    try:
        session = orchestrator.run()
    finally:
        _restore_signal_handlers(previous)

    report = build_report(session)
    cause = report.failure_cause()
    if cause is not None and report.exit_code != 0:
        print(f"error: {cause}", file=sys.stderr)
    for line in report.summary().splitlines():
        logger.info(line)

    print(report.to_json())
    if output:
        write_report(report, output)
        logger.info("report written to %s", output)
    return report.exit_code


def _install_signal_handlers(handler: Any) -> dict[int, Any]:
    previous: dict[int, Any] = {}
    # Only the main thread may install signal handlers.
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, handler)
    except ValueError:
        logger.debug("not in main thread; signal handlers not installed")
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        # None means the previous handler was not installed from Python.
        signal.signal(sig, handler if handler is not None else signal.SIG_DFL)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, stream=sys.stderr)

    if args.cmd == "run":
        try:
            config = session_config_from_args(args)
        except ValueError as e:
            parser.error(str(e))
        return run(config, output=args.output)

    parser.error(f"unknown command {args.cmd!r}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
