import base64
import hashlib
import hmac

import pytest

import sample_closures as sc
from closurepack import (
    ClosureEnvelope,
    ClosureSerializer,
    ExclusionRegistry,
    ReconstructionError,
    SerializationError,
    SerializerConfig,
    SignatureError,
)
from closurepack.core.serializer import SIGNATURE_LENGTH, SIGNATURE_MARKER, split_signature


def test_unsigned_round_trip(serializer):
    payload = serializer.serialize(sc.make_greeter())
    assert payload[:1] != SIGNATURE_MARKER
    restored = serializer.deserialize(payload)
    assert restored("bob") == "a1bob"


def test_signed_payload_layout(signed_serializer):
    payload = signed_serializer.serialize(sc.make_greeter())
    assert payload[:1] == SIGNATURE_MARKER

    encoded, body = payload[1:1 + SIGNATURE_LENGTH], payload[1 + SIGNATURE_LENGTH:]
    expected = hmac.new(b"top-secret", body, hashlib.sha256).digest()
    assert base64.b64decode(encoded) == expected
    assert signed_serializer.deserialize(payload)("eve") == "a1eve"


def test_tampered_payload_is_rejected_before_loading(signed_serializer, monkeypatch):
    payload = bytearray(signed_serializer.serialize(sc.make_greeter()))
    payload[-5] ^= 0x01

    def fail(data):
        raise AssertionError("payload was interpreted before verification")

    monkeypatch.setattr("closurepack.core.envelope.load_descriptor", fail)
    with pytest.raises(SignatureError):
        signed_serializer.deserialize(bytes(payload))


def test_wrong_key(signed_serializer, registry):
    payload = signed_serializer.serialize(sc.make_greeter())
    other = ClosureSerializer(signing_key="other-secret", registry=registry)
    with pytest.raises(SignatureError):
        other.deserialize(payload)


def test_unsigned_payload_with_key(serializer, signed_serializer):
    payload = serializer.serialize(sc.make_greeter())
    with pytest.raises(SignatureError, match="not signed"):
        signed_serializer.deserialize(payload)


def test_malformed_signature(signed_serializer):
    payload = signed_serializer.serialize(sc.make_greeter())
    broken = SIGNATURE_MARKER + b"!" * SIGNATURE_LENGTH + payload[1 + SIGNATURE_LENGTH:]
    assert split_signature(broken)[0] is None
    with pytest.raises(SignatureError):
        signed_serializer.deserialize(broken)


def test_signed_payload_without_key(serializer, signed_serializer):
    payload = signed_serializer.serialize(sc.make_greeter())
    assert serializer.deserialize(payload)("kim") == "a1kim"


def test_split_signature():
    assert split_signature(b"plain") == (None, b"plain")
    signature, body = split_signature(
        SIGNATURE_MARKER + base64.b64encode(b"x" * 32) + b"body"
    )
    assert signature == b"x" * 32
    assert body == b"body"


def test_exclusion_keeps_value_out_of_payload(analyzer):
    conn = sc.Connection("secret-host")
    sender = ClosureSerializer(analyzer=analyzer, registry=ExclusionRegistry())
    sender.exclude("conn", conn)
    payload = sender.serialize(sc.make_query(conn))
    assert b"secret-host" not in payload

    receiver = ClosureSerializer(analyzer=analyzer, registry=ExclusionRegistry())
    receiver.exclude("conn", sc.Connection("local-host"))
    assert receiver.deserialize(payload)("select 1") == "local-host:select 1"


def test_unexcluded_resource_fails(serializer):
    with pytest.raises(SerializationError) as info:
        serializer.serialize(sc.make_query(sc.Connection("db")))
    assert info.value.__cause__ is not None


def test_missing_exclusion_on_receiver(analyzer):
    conn = sc.Connection("db")
    sender = ClosureSerializer(analyzer=analyzer, registry=ExclusionRegistry())
    sender.exclude("conn", conn)
    payload = sender.serialize(sc.make_query(conn))

    receiver = ClosureSerializer(analyzer=analyzer, registry=ExclusionRegistry())
    with pytest.raises(ReconstructionError):
        receiver.deserialize(payload)


def test_same_line_lambdas_round_trip(serializer):
    first, second = sc.make_labels()
    assert serializer.deserialize(serializer.serialize(first))() == "first"
    assert serializer.deserialize(serializer.serialize(second))() == "second"

    get_x, get_y = sc.make_getters()
    assert serializer.deserialize(serializer.serialize(get_x))() == "x"
    assert serializer.deserialize(serializer.serialize(get_y))() == "y"


def test_nested_lambda_round_trip(serializer):
    outer = sc.make_thunk_factory()
    assert serializer.deserialize(serializer.serialize(outer))()() == 42
    assert serializer.deserialize(serializer.serialize(outer()))() == 42


def test_bound_method_round_trip(signed_serializer):
    restored = signed_serializer.deserialize(
        signed_serializer.serialize(sc.Account("ada").describe)
    )
    assert restored("Ms ") == "Ms ada"


def test_staticmethod_round_trip(serializer):
    restored = serializer.deserialize(serializer.serialize(sc.MathUtil.__dict__["double"]))
    assert isinstance(restored, staticmethod)
    assert restored(7) == 14


def test_mutual_recursion_raises(serializer):
    with pytest.raises(SerializationError):
        serializer.serialize(sc.make_even_odd())


def test_capture_globals_from_config(registry):
    config = SerializerConfig(capture_globals=True)
    serializer = ClosureSerializer(config=config, registry=registry)
    assert serializer.analyzer.capture_globals
    restored = serializer.deserialize(serializer.serialize(sc.module_fact))
    assert restored(5) == 120


def test_config_from_env(monkeypatch, registry):
    monkeypatch.setenv("CLOSUREPACK_SIGNING_KEY", "env-secret")
    monkeypatch.setenv("CLOSUREPACK_CAPTURE_GLOBALS", "true")
    config = SerializerConfig.from_env()
    assert config.signing_key == "env-secret"
    assert config.capture_globals

    serializer = ClosureSerializer(config=config, registry=registry)
    assert serializer.signing_key == b"env-secret"

    explicit = ClosureSerializer(signing_key=b"explicit", config=config, registry=registry)
    assert explicit.signing_key == b"explicit"


def test_config_defaults():
    config = SerializerConfig.from_env()
    assert config.signing_key is None
    assert not config.capture_globals
    assert config.analyzer == "source"


def test_wrap_data_top_level_only(serializer):
    fn = sc.make_greeter()
    inner = [fn]
    data = {"fn": fn, "value": 3, "nested": inner}

    wrapped = serializer.wrap_data(data)
    assert isinstance(wrapped["fn"], ClosureEnvelope)
    assert wrapped["value"] == 3
    assert wrapped["nested"] is inner
    assert inner[0] is fn

    unwrapped = serializer.unwrap_data(wrapped)
    assert unwrapped["fn"] is fn

    single = serializer.wrap_data(fn)
    assert isinstance(single, ClosureEnvelope)
    assert serializer.unwrap_data(single) is fn
    assert serializer.wrap_data((fn, 1))[1] == 1


def test_wrap_closures_traverses_objects(serializer):
    fn = sc.make_greeter()
    job = sc.Job("nightly", fn, steps=[fn, {"retry": fn}])
    frozen = sc.Frozen(fn)
    handlers = sc.HandlerSet(fn)
    shared = (fn,)
    data = {"job": job, "frozen": frozen, "handlers": handlers, "pair": (fn, 2)}
    data["shared"] = [shared, shared]
    data["self"] = data

    result = serializer.wrap_closures(data)
    assert result is data
    assert isinstance(job.callback, ClosureEnvelope)
    assert isinstance(job.steps[0], ClosureEnvelope)
    assert isinstance(job.steps[1]["retry"], ClosureEnvelope)
    assert frozen.fn is fn
    assert isinstance(handlers.handlers[0], ClosureEnvelope)
    assert isinstance(data["pair"][0], ClosureEnvelope)
    assert data["pair"][1] == 2
    assert data["self"] is data
    first, second = data["shared"]
    assert isinstance(first[0], ClosureEnvelope)
    assert second is first


def test_wrap_closures_bound_method(serializer):
    account = sc.Account("ada")
    wrapped = serializer.wrap_closures(account.describe)
    assert isinstance(wrapped, ClosureEnvelope)
    assert wrapped("Dr ") == "Dr ada"
