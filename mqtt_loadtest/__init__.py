"""MQTT load-test harness.

Runs one subscriber and N concurrent publishers against a broker:
- the subscriber connects and subscribes first
- each publisher sends a fixed number of messages at a paced rate
- after the publishers finish (or the session times out) the subscriber gets a
  grace period to drain in-flight messages, then everything is disconnected
- a JSON run report is printed with counts, loss, latency and a pass/fail verdict

See `python -m mqtt_loadtest.app run -h`.
"""
