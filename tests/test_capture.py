"""Tests for the value capture codec."""

from __future__ import annotations

import pytest
from pydantic import BaseModel

from exitcheck.capture import (
    PAYLOAD_VERSION,
    CapturedValue,
    TypeRef,
    capture_values,
    decode_captures,
    decode_payload,
    encode_captures,
    resolve_type,
    type_ref_for,
)
from exitcheck.errors import CaptureDecodeError, CaptureError, ExitTestSystemError
from exitcheck.registry import ExitTestID, id_for


# ── Helpers ──────────────────────────────────────────────────────────────


class Point(BaseModel):
    x: int


class LabeledPoint(Point):
    label: str = ""


class Reading(BaseModel):
    value: float


class Opaque:
    def __init__(self, handle):
        self.handle = handle


def _make_body(**values):
    i = values.get("i", 123)
    s = values.get("s", "abc")

    def body():
        return i, s

    return body


def _test_id() -> ExitTestID:
    return id_for(_make_body())


# ── Capturing ────────────────────────────────────────────────────────────


class TestCaptureValues:
    def test_free_variables_in_closure_order(self):
        values = capture_values(_make_body())
        assert [value.name for value in values] == ["i", "s"]
        assert [value.data for value in values] == ["123", '"abc"']
        assert values[0].type_ref == TypeRef(name="builtins:int")

    def test_no_captures(self):
        def body():
            return 1

        assert capture_values(body) == []

    def test_declared_type_overrides_runtime_type(self):
        point = LabeledPoint(x=1, label="a")

        def body():
            return point

        (value,) = capture_values(body, {"point": Point})
        assert value.type_ref.name.endswith(":Point")
        assert "label" not in value.data

    def test_unencodable_value(self):
        opaque = Opaque(3)

        def body():
            return opaque

        with pytest.raises(CaptureError) as exc_info:
            capture_values(body)
        assert exc_info.value.name == "opaque"

    def test_value_not_valid_for_declared_type(self):
        text = "abc"

        def body():
            return text

        with pytest.raises(CaptureError, match="'text'"):
            capture_values(body, {"text": int})

    def test_local_class_is_rejected(self):
        class Local(BaseModel):
            x: int = 0

        local = Local()

        def body():
            return local

        with pytest.raises(CaptureError, match="inside a function"):
            capture_values(body)

    def test_unknown_declared_name(self):
        def body():
            return 1

        with pytest.raises(CaptureError, match="'missing'"):
            capture_values(body, {"missing": int})

    def test_unbound_cell(self):
        def body():
            return later

        with pytest.raises(CaptureError, match="not bound"):
            capture_values(body)
        later = 1  # noqa: F841

    def test_capture_error_is_a_caller_error(self):
        from exitcheck.errors import CallerError

        assert issubclass(CaptureError, CallerError)


# ── Type references ──────────────────────────────────────────────────────


class TestTypeRef:
    @pytest.mark.parametrize(
        "declared",
        [int, str, type(None), list[int], dict[str, Point], int | None, tuple[int, ...]],
    )
    def test_resolves_back(self, declared):
        resolved = resolve_type(type_ref_for(declared))
        assert resolved == declared

    def test_str(self):
        assert str(type_ref_for(list[int])) == "builtins:list[builtins:int]"

    def test_rejects_non_types(self):
        with pytest.raises(TypeError):
            type_ref_for(42)


# ── Payloads ─────────────────────────────────────────────────────────────


class TestPayload:
    def test_round_trip(self):
        test_id = _test_id()
        payload = encode_captures(test_id, capture_values(_make_body()))
        assert decode_captures(payload, ["i", "s"], test_id) == {"i": 123, "s": "abc"}

    def test_header_line(self):
        test_id = _test_id()
        payload = encode_captures(test_id, [])
        header, _, body = payload.partition(b"\n")
        assert b'"version":%d' % PAYLOAD_VERSION in header
        payload_id, values = decode_payload(payload)
        assert payload_id == test_id
        assert values == []

    def test_decodes_as_declared_type(self):
        point = LabeledPoint(x=7, label="seven")

        def body():
            return point

        payload = encode_captures(_test_id(), capture_values(body, {"point": Point}))
        decoded = decode_captures(payload, ["point"])["point"]
        assert type(decoded) is Point
        assert decoded.x == 7

    def test_non_finite_floats(self):
        x = float("nan")
        y = float("inf")
        z = float("-inf")

        def body():
            return x, y, z

        payload = encode_captures(_test_id(), capture_values(body))
        decoded = decode_captures(payload, ["x", "y", "z"])
        assert decoded["x"] != decoded["x"]
        assert decoded["y"] == float("inf")
        assert decoded["z"] == float("-inf")

    def test_binary_bytes(self):
        data = bytes(range(256))

        def body():
            return data

        payload = encode_captures(_test_id(), capture_values(body))
        assert decode_captures(payload, ["data"])["data"] == data

    def test_megabyte_buffer(self):
        buffer = bytes(range(256)) * 4096

        def body():
            return buffer

        payload = encode_captures(_test_id(), capture_values(body))
        assert len(payload) > len(buffer)
        assert decode_captures(payload, ["buffer"])["buffer"] == buffer

    def test_model_that_cannot_carry_nan_fails_before_spawn(self):
        reading = Reading(value=float("nan"))

        def body():
            return reading

        with pytest.raises(CaptureError) as exc_info:
            capture_values(body)
        assert exc_info.value.name == "reading"

    def test_encoding_is_pure(self):
        test_id = _test_id()
        values = capture_values(_make_body())
        assert encode_captures(test_id, values) == encode_captures(test_id, values)

    def test_missing_name(self):
        payload = encode_captures(_test_id(), capture_values(_make_body()))
        with pytest.raises(CaptureDecodeError, match="missing"):
            decode_captures(payload, ["i", "s", "extra"])

    def test_unexpected_name(self):
        payload = encode_captures(_test_id(), capture_values(_make_body()))
        with pytest.raises(CaptureDecodeError, match="unexpected"):
            decode_captures(payload, ["i"])

    def test_truncated(self):
        payload = encode_captures(_test_id(), capture_values(_make_body()))
        with pytest.raises(CaptureDecodeError, match="truncated"):
            decode_captures(payload[:-3], ["i", "s"])

    def test_wrong_version(self):
        payload = encode_captures(_test_id(), [])
        tampered = payload.replace(b'"version":1', b'"version":99', 1)
        with pytest.raises(CaptureDecodeError, match="version 99"):
            decode_captures(tampered, [])

    def test_no_header(self):
        with pytest.raises(CaptureDecodeError, match="no header"):
            decode_captures(b"garbage", [])

    def test_other_exit_test(self):
        payload = encode_captures(_test_id(), [])
        other = ExitTestID("elsewhere", "elsewhere.py", "f", 1, 0)
        with pytest.raises(CaptureDecodeError, match="belongs to"):
            decode_captures(payload, [], other)

    def test_value_does_not_decode(self):
        bad = CapturedValue(name="i", type_ref=type_ref_for(int), data='"not a number"')
        payload = encode_captures(_test_id(), [bad])
        with pytest.raises(CaptureDecodeError, match="'i'"):
            decode_captures(payload, ["i"])

    def test_unresolvable_type(self):
        bad = CapturedValue(name="i", type_ref=TypeRef(name="no_such_module_xyz:Thing"), data="1")
        payload = encode_captures(_test_id(), [bad])
        with pytest.raises(CaptureDecodeError, match="cannot be resolved"):
            decode_captures(payload, ["i"])

    def test_decode_errors_are_system_errors(self):
        assert issubclass(CaptureDecodeError, ExitTestSystemError)
