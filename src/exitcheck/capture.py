"""Value capture codec.

The free variables of an exit test body are its capture list. Each captured
value is encoded through its **declared** type with ``pydantic.TypeAdapter``
and travels to the child together with a portable reference to that type.

Declared types default to ``type(value)``; pass ``captures={"name": Base}``
to ``expect_exit`` to declare something else. A value always round-trips as
its declared type: an instance of ``Derived`` captured as ``Base`` comes back
as a ``Base`` with only ``Base``'s fields.

Payload layout (bytes)::

    {"version": 1, "test_id": {...}, "length": N}\\n
    <N bytes: {"values": [{"name": ..., "type_ref": ..., "data": ...}, ...]}>

Encoding problems are caller errors (``CaptureError``) raised before the
child is spawned. Decoding problems in the child (``CaptureDecodeError``)
mean the two sides disagree about the source and are never papered over
with default values.
"""

from __future__ import annotations

import importlib
import sys
import types
import typing
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PydanticUserError, TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from exitcheck.errors import CaptureDecodeError, CaptureError
from exitcheck.registry import _MAIN_ALIAS, ExitTestID

PAYLOAD_VERSION = 1

_NONE = "None"
_ELLIPSIS = "..."

# JSON has no NaN/Infinity and no raw bytes; both must survive the trip
_CODEC_CONFIG = ConfigDict(
    ser_json_inf_nan="constants",
    ser_json_bytes="base64",
    val_json_bytes="base64",
)


class TypeRef(BaseModel):
    """Importable reference to a (possibly parameterized) type."""

    name: str
    args: list[TypeRef] = Field(default_factory=list)

    def __str__(self) -> str:
        if self.args:
            return f"{self.name}[{', '.join(str(arg) for arg in self.args)}]"
        return self.name


class CapturedValue(BaseModel):
    """One named value, encoded as JSON through its declared type."""

    name: str
    type_ref: TypeRef
    data: str


class _PayloadHeader(BaseModel):
    version: int
    test_id: dict[str, Any]
    length: int


class _PayloadBody(BaseModel):
    values: list[CapturedValue] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Type references
# ---------------------------------------------------------------------------


def type_ref_for(declared: Any) -> TypeRef:
    """Build a ``TypeRef`` for ``declared``.

    Raises:
        TypeError: The type cannot be referenced from another process.
    """
    if declared is None or declared is type(None):
        return TypeRef(name=_NONE)
    if declared is Ellipsis:
        return TypeRef(name=_ELLIPSIS)

    origin = typing.get_origin(declared)
    if origin is not None:
        if origin is typing.Union or origin is types.UnionType:
            name = "typing:Union"
        elif isinstance(origin, type):
            name = type_ref_for(origin).name
        else:
            raise TypeError(f"{declared!r} is not supported as a declared capture type")
        return TypeRef(name=name, args=[type_ref_for(arg) for arg in typing.get_args(declared)])

    if not isinstance(declared, type):
        raise TypeError(f"{declared!r} is not a type")
    if "<locals>" in declared.__qualname__:
        raise TypeError(f"{declared.__qualname__} is defined inside a function and cannot be imported")
    return TypeRef(name=f"{declared.__module__}:{declared.__qualname__}")


def resolve_type(ref: TypeRef) -> Any:
    """Turn a ``TypeRef`` back into a type (parent or child side)."""
    if ref.name == _NONE:
        return type(None)
    if ref.name == _ELLIPSIS:
        return Ellipsis

    module_name, _, qualname = ref.name.partition(":")
    if module_name == "__main__" and _MAIN_ALIAS in sys.modules:
        target: Any = sys.modules[_MAIN_ALIAS]
    else:
        target = importlib.import_module(module_name)
    for part in qualname.split("."):
        target = getattr(target, part)

    if ref.args:
        args = tuple(resolve_type(arg) for arg in ref.args)
        return target[args if len(args) > 1 else args[0]]
    return target


# ---------------------------------------------------------------------------
# Encoding (parent)
# ---------------------------------------------------------------------------


def _adapter(declared: Any) -> TypeAdapter[Any]:
    """``TypeAdapter`` for ``declared`` using the capture codec settings.

    Models, dataclasses and TypedDicts bring their own config, which pydantic
    does not let an adapter override.
    """
    try:
        return TypeAdapter(declared, config=_CODEC_CONFIG)
    except PydanticUserError as exc:
        if exc.code != "type-adapter-config-unused":
            raise
        return TypeAdapter(declared)


def encode_value(name: str, value: Any, declared: Any) -> CapturedValue:
    """Encode one value through ``declared``."""
    try:
        ref = type_ref_for(declared)
        if typing.get_origin(declared) is None and resolve_type(ref) is not declared:
            raise TypeError(f"{ref} does not resolve back to the declared type")
    except (TypeError, ImportError, AttributeError) as exc:
        raise CaptureError(name, str(exc), cause=exc) from exc

    try:
        adapter = _adapter(declared)
        data = adapter.dump_json(adapter.validate_python(value))
    except ValidationError as exc:
        raise CaptureError(
            name, f"value is not a valid {ref}: {exc.error_count()} validation error(s)", cause=exc
        ) from exc
    except (PydanticUserError, PydanticSerializationError, TypeError, ValueError) as exc:
        raise CaptureError(name, f"{ref} has no portable encoding ({exc})", cause=exc) from exc

    # The child must read back what is sent, or fail here instead
    try:
        adapter.validate_json(data)
    except ValidationError as exc:
        raise CaptureError(name, f"{ref} does not survive its JSON encoding", cause=exc) from exc
    return CapturedValue(name=name, type_ref=ref, data=data.decode("utf-8"))


def capture_values(
    body: Callable[..., Any],
    declared_types: Mapping[str, Any] | None = None,
) -> list[CapturedValue]:
    """Encode the free variables of ``body``, in closure order."""
    code = body.__code__
    names = code.co_freevars
    cells = body.__closure__ or ()
    declared_types = dict(declared_types or {})

    for unknown in sorted(set(declared_types) - set(names)):
        raise CaptureError(unknown, "is not referenced by the exit test body")

    values = []
    for name, cell in zip(names, cells):
        try:
            value = cell.cell_contents
        except ValueError as exc:
            raise CaptureError(name, "is not bound yet in the enclosing scope", cause=exc) from exc
        values.append(encode_value(name, value, declared_types.get(name, type(value))))
    return values


def encode_captures(test_id: ExitTestID, values: Iterable[CapturedValue]) -> bytes:
    """Frame ``values`` for transport. Pure."""
    body = _PayloadBody(values=list(values)).model_dump_json().encode("utf-8")
    header = _PayloadHeader(
        version=PAYLOAD_VERSION,
        test_id=test_id.to_dict(),
        length=len(body),
    ).model_dump_json().encode("utf-8")
    return header + b"\n" + body


# ---------------------------------------------------------------------------
# Decoding (child)
# ---------------------------------------------------------------------------


def decode_payload(payload: bytes) -> tuple[ExitTestID, list[CapturedValue]]:
    """Split a payload into its test ID and encoded values."""
    header_line, newline, body = payload.partition(b"\n")
    if not newline:
        raise CaptureDecodeError("Capture payload has no header")
    try:
        header = _PayloadHeader.model_validate_json(header_line)
    except ValidationError as exc:
        raise CaptureDecodeError("Capture payload header is malformed", cause=exc) from exc
    if header.version != PAYLOAD_VERSION:
        raise CaptureDecodeError(
            f"Capture payload version {header.version} is not supported (expected {PAYLOAD_VERSION})"
        )
    if len(body) != header.length:
        raise CaptureDecodeError(
            f"Capture payload is truncated: expected {header.length} bytes, got {len(body)}"
        )
    try:
        parsed = _PayloadBody.model_validate_json(body)
        test_id = ExitTestID.from_dict(header.test_id)
    except (ValidationError, KeyError, TypeError, ValueError) as exc:
        raise CaptureDecodeError("Capture payload body is malformed", cause=exc) from exc
    return test_id, parsed.values


def decode_value(value: CapturedValue) -> Any:
    try:
        declared = resolve_type(value.type_ref)
    except (ImportError, AttributeError, TypeError) as exc:
        raise CaptureDecodeError(
            f"Declared type {value.type_ref} of '{value.name}' cannot be resolved", cause=exc
        ) from exc
    try:
        return _adapter(declared).validate_json(value.data)
    except (ValidationError, PydanticUserError) as exc:
        raise CaptureDecodeError(
            f"'{value.name}' does not decode as {value.type_ref}", cause=exc
        ) from exc


def decode_captures(
    payload: bytes,
    expected_names: Iterable[str],
    test_id: ExitTestID | None = None,
) -> dict[str, Any]:
    """Rebuild the values the body expects.

    Raises:
        CaptureDecodeError: The payload is malformed, belongs to another exit
            test, lacks an expected name, carries an unexpected one, or a
            value does not decode as its declared type.
    """
    payload_id, values = decode_payload(payload)
    if test_id is not None and payload_id != test_id:
        raise CaptureDecodeError(f"Capture payload belongs to {payload_id}, not {test_id}")

    expected = list(expected_names)
    names = [value.name for value in values]
    missing = [name for name in expected if name not in names]
    unexpected = [name for name in names if name not in expected]
    if missing or unexpected or len(set(names)) != len(names):
        raise CaptureDecodeError(
            f"Captured names do not match the exit test body "
            f"(missing={missing}, unexpected={unexpected})"
        )
    return {value.name: decode_value(value) for value in values}
