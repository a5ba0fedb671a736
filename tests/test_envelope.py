import pytest

from shared.envelope import Envelope, MalformedEnvelopeError


def test_from_json_accepts_complete_envelope():
    env = Envelope.from_json('{"version":1,"channel":"metrics","payload":{"cpu":10}}')

    assert env == Envelope(version=1, channel="metrics", payload={"cpu": 10})


def test_falsy_payloads_are_still_present():
    assert Envelope.from_dict({"version": 1, "channel": "c", "payload": 0}).payload == 0
    assert Envelope.from_dict({"version": 1, "channel": "c", "payload": []}).payload == []


def test_extra_fields_are_ignored():
    env = Envelope.from_dict({"version": 1, "channel": "c", "payload": {}, "ts": 123})
    assert env.to_dict() == {"version": 1, "channel": "c", "payload": {}}


@pytest.mark.parametrize("data", [
    {"channel": "x", "payload": {}},
    {"version": 1, "payload": {}},
    {"version": 1, "channel": "x"},
    {"version": None, "channel": "x", "payload": {}},
    {"version": 1, "channel": 5, "payload": {}},
    {"version": 1, "channel": "", "payload": {}},
    "just a string",
])
def test_from_dict_rejects_invalid_envelopes(data):
    with pytest.raises(MalformedEnvelopeError):
        Envelope.from_dict(data)


def test_from_json_rejects_invalid_json():
    with pytest.raises(MalformedEnvelopeError, match="Invalid JSON"):
        Envelope.from_json("{not json")


def test_to_json_is_compact_and_ordered():
    env = Envelope(version=1, channel="metrics", payload={"cpu": 10})
    assert env.to_json() == '{"version":1,"channel":"metrics","payload":{"cpu":10}}'
