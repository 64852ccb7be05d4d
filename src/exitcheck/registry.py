"""Exit-test registry: stable IDs for exit test bodies.

A function cannot be sent to another process, so the child re-imports the
module that defined the body and finds the same code again. Every code
object reachable from a module gets an ``ExitTestID`` derived from where it
was defined:

    module · filename · qualname · line · column · ordinal

``column`` is the column of the ``def``/``lambda`` inside its enclosing code
(1-based, 0 for module-level functions) and ``ordinal`` tells apart bodies
that share file, line and column. Parent and child run the same walk over
the same source, so they agree on every ID.

Reachable code objects:
    - module-level functions and lambdas
    - classes defined in the module, their methods, static and class methods,
      property accessors and nested classes
    - ``__wrapped__`` chains left by ``functools.wraps``
    - every nested function, lambda and comprehension, via ``co_consts``

A body that is not reachable (created by ``exec``, or a lambda at module
scope that is never bound to a name) cannot be re-run in a child, and
``id_for`` raises ``ExitTestNotRegisteredError`` for it.

Registries are built once per module, under a lock, and are read-only
afterwards.
"""

from __future__ import annotations

import dis
import importlib
import importlib.util
import json
import os
import sys
import threading
import types
from collections import Counter
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass
from typing import Any

from exitcheck.errors import ErrorContext, ExitTestNotRegisteredError
from exitcheck.issues import SourceLocation
from exitcheck.logging import get_logger

logger = get_logger(__name__)

_MAIN_ALIAS = "__exitcheck_main__"


@dataclass(frozen=True, order=True)
class ExitTestID:
    """Identifies one exit test body within a module."""

    module: str
    filename: str
    qualname: str
    line: int
    column: int
    ordinal: int = 0

    @property
    def source_location(self) -> SourceLocation:
        return SourceLocation(self.filename, self.line, self.column)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExitTestID:
        return cls(
            module=data["module"],
            filename=data["filename"],
            qualname=data["qualname"],
            line=int(data["line"]),
            column=int(data["column"]),
            ordinal=int(data.get("ordinal", 0)),
        )

    @classmethod
    def from_json(cls, text: str) -> ExitTestID:
        return cls.from_dict(json.loads(text))

    def __str__(self) -> str:
        return f"{self.module}:{self.line}:{self.column}#{self.ordinal} ({self.qualname})"


@dataclass(frozen=True)
class ExitTestRecord:
    """A registered body: its ID and the code to rebuild it from."""

    id: ExitTestID
    code: types.CodeType

    @property
    def capture_names(self) -> tuple[str, ...]:
        """Names of the closure variables the body needs."""
        return self.code.co_freevars

    def make_body(self, globals_: dict[str, Any], values: dict[str, Any]) -> Callable[[], Any]:
        """Rebuild the body as a function bound to ``globals_`` and ``values``."""
        closure = tuple(types.CellType(values[name]) for name in self.code.co_freevars)
        return types.FunctionType(self.code, globals_, self.code.co_name, None, closure or None)


# ---------------------------------------------------------------------------
# Walking
# ---------------------------------------------------------------------------


def _iter_functions(obj: Any, module_name: str, seen: set[int]) -> Iterator[types.FunctionType]:
    if id(obj) in seen:
        return
    seen.add(id(obj))

    if isinstance(obj, (staticmethod, classmethod)):
        yield from _iter_functions(obj.__func__, module_name, seen)
    elif isinstance(obj, property):
        for accessor in (obj.fget, obj.fset, obj.fdel):
            if accessor is not None:
                yield from _iter_functions(accessor, module_name, seen)
    elif isinstance(obj, types.FunctionType):
        if obj.__module__ == module_name:
            yield obj
        wrapped = obj.__dict__.get("__wrapped__")
        if wrapped is not None:
            yield from _iter_functions(wrapped, module_name, seen)
    elif isinstance(obj, type):
        if obj.__module__ == module_name:
            for value in list(vars(obj).values()):
                yield from _iter_functions(value, module_name, seen)
    else:
        namespace = getattr(obj, "__dict__", None)
        if isinstance(namespace, dict) and "__wrapped__" in namespace:
            yield from _iter_functions(namespace["__wrapped__"], module_name, seen)


def _nested_columns(code: types.CodeType) -> dict[int, int]:
    """Column of each nested code object's definition inside ``code``."""
    columns: dict[int, int] = {}
    for instruction in dis.get_instructions(code):
        if not isinstance(instruction.argval, types.CodeType):
            continue
        positions = getattr(instruction, "positions", None)
        if positions is not None and positions.col_offset is not None:
            columns.setdefault(id(instruction.argval), positions.col_offset + 1)
    return columns


def _walk_code(
    code: types.CodeType,
    column: int,
    seen: set[int],
    out: list[tuple[types.CodeType, int]],
) -> None:
    if id(code) in seen:
        return
    seen.add(id(code))
    out.append((code, column))
    columns = _nested_columns(code)
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            _walk_code(const, columns.get(id(const), 0), seen, out)


def _collect(module: types.ModuleType, label: str) -> list[ExitTestRecord]:
    functions_seen: set[int] = set()
    codes_seen: set[int] = set()
    walked: list[tuple[types.CodeType, int]] = []
    for value in list(vars(module).values()):
        for function in _iter_functions(value, module.__name__, functions_seen):
            _walk_code(function.__code__, 0, codes_seen, walked)

    ordinals: Counter[tuple[str, int, int]] = Counter()
    records = []
    for code, column in walked:
        key = (code.co_filename, code.co_firstlineno, column)
        test_id = ExitTestID(
            module=label,
            filename=code.co_filename,
            qualname=getattr(code, "co_qualname", code.co_name),
            line=code.co_firstlineno,
            column=column,
            ordinal=ordinals[key],
        )
        ordinals[key] += 1
        records.append(ExitTestRecord(test_id, code))
    return records


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ExitTestRegistry:
    """All exit test bodies reachable from one module."""

    def __init__(self, module: types.ModuleType, label: str | None = None) -> None:
        self.module = module
        self.label = label or module.__name__
        records = _collect(module, self.label)
        self._records = {record.id: record for record in records}
        self._by_code = {id(record.code): record for record in records}

    @classmethod
    def for_module(cls, module: types.ModuleType, name: str | None = None) -> ExitTestRegistry:
        """Cached registry of ``module`` (see ``registry_for``)."""
        return registry_for(module, name)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ExitTestRecord]:
        return iter(self._records.values())

    def find(self, test_id: ExitTestID) -> ExitTestRecord | None:
        return self._records.get(test_id)

    def id_for_code(self, code: types.CodeType) -> ExitTestID | None:
        record = self._by_code.get(id(code))
        return record.id if record is not None else None


_registries: dict[str, ExitTestRegistry] = {}
_lock = threading.Lock()


def registry_for(module: types.ModuleType, label: str | None = None) -> ExitTestRegistry:
    """The (cached) registry of ``module``; rebuilt if the module was reloaded."""
    key = label or module.__name__
    registry = _registries.get(key)
    if registry is not None and registry.module is module:
        return registry
    with _lock:
        registry = _registries.get(key)
        if registry is None or registry.module is not module:
            registry = ExitTestRegistry(module, key)
            _registries[key] = registry
            logger.debug("exit_test_registry_built", module=key, bodies=len(registry))
    return registry


def clear_registry() -> None:
    """Forget all cached registries (for testing)."""
    with _lock:
        _registries.clear()


def id_for(body: Callable[..., Any]) -> ExitTestID:
    """The ID of ``body``, as the parent assigns it before spawning.

    Raises:
        ExitTestNotRegisteredError: ``body`` is not a zero-argument function
            reachable from its module.
    """
    if not isinstance(body, types.FunctionType):
        raise ExitTestNotRegisteredError(
            f"Exit test body must be a plain function or lambda, got {type(body).__name__}"
        )
    code = body.__code__
    if code.co_argcount or code.co_kwonlyargcount or code.co_posonlyargcount:
        raise ExitTestNotRegisteredError(
            f"Exit test body {body.__qualname__} must not take arguments"
        )
    module = sys.modules.get(body.__module__)
    if module is None:
        raise ExitTestNotRegisteredError(
            f"Module {body.__module__!r} of exit test body {body.__qualname__} is not loaded"
        )
    test_id = registry_for(module).id_for_code(code)
    if test_id is None:
        raise ExitTestNotRegisteredError(
            f"Exit test body {body.__qualname__} is not reachable from module {module.__name__!r}",
            context=ErrorContext(source_location=f"{code.co_filename}:{code.co_firstlineno}"),
        )
    return test_id


# ---------------------------------------------------------------------------
# Child side
# ---------------------------------------------------------------------------


def _same_file(module: types.ModuleType, filename: str) -> bool:
    module_file = getattr(module, "__file__", None)
    if not module_file:
        return False
    return os.path.realpath(module_file) == os.path.realpath(filename)


def _load_from_file(name: str, filename: str) -> types.ModuleType:
    spec = importlib.util.spec_from_file_location(name, filename)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load {filename} as module {name!r}", name=name, path=filename)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(name, None)
        raise
    return module


def load_module_for(test_id: ExitTestID) -> types.ModuleType:
    """Import the module that defines ``test_id``.

    Imports by name first. Falls back to loading ``test_id.filename`` when
    the module was ``__main__``, is not importable by name, or the name
    resolves to a different file.
    """
    if test_id.module != "__main__":
        try:
            module = importlib.import_module(test_id.module)
        except ImportError:
            logger.debug("exit_test_module_not_importable", module=test_id.module)
        else:
            if _same_file(module, test_id.filename):
                return module
        return _load_from_file(test_id.module, test_id.filename)
    return _load_from_file(_MAIN_ALIAS, test_id.filename)


def find(test_id: ExitTestID) -> ExitTestRecord | None:
    """Look up ``test_id`` in the registry of its module, importing it if needed."""
    module = load_module_for(test_id)
    return registry_for(module, test_id.module).find(test_id)
