import json

import pytest

from mqtt_loadtest import envelope


def test_encode_is_compact_json():
    raw = envelope.encode(publisher="p-1", seq=3, body="hi", sent_at=100.5)
    assert json.loads(raw) == {"pub": "p-1", "seq": 3, "ts": 100.5, "body": "hi"}
    assert b" " not in raw


def test_decode_envelope():
    env = envelope.decode(envelope.encode(publisher="p-1", seq=3, body="hi", sent_at=100.5))
    assert env == envelope.Envelope(publisher="p-1", seq=3, sent_at=100.5, body="hi")


@pytest.mark.parametrize("raw", [b"hello", b"\xff\xfe", b"[1, 2]", b'{"pub": "p"}', b'{"pub": 1, "seq": 1, "ts": 1}'])
def test_decode_foreign_payload_returns_none(raw):
    assert envelope.decode(raw) is None


def test_make_body():
    assert envelope.make_body(0) == ""
    assert len(envelope.make_body(1024)) == 1024
    with pytest.raises(ValueError):
        envelope.make_body(-1)
