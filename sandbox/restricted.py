"""Restricted compilation and globals for source scripts."""

from __future__ import annotations

import json
import logging
import math
import operator
import time
from concurrent.futures import Future
from types import CodeType, SimpleNamespace
from typing import Any

from RestrictedPython import compile_restricted
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safe_builtins,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

from sandbox.context import PlatformContext

logger = logging.getLogger("sandbox.script")

SCRIPT_FILENAME = "<source-script>"

_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}

_EXTRA_BUILTINS = {
    "dict": dict,
    "list": list,
    "set": set,
    "frozenset": frozenset,
    "enumerate": enumerate,
    "min": min,
    "max": max,
    "sum": sum,
    "any": any,
    "all": all,
    "map": map,
    "filter": filter,
    "reversed": reversed,
    "getattr": safer_getattr,
}


def _inplacevar(op: str, target: Any, value: Any) -> Any:
    func = _INPLACE_OPERATORS.get(op)
    if func is None:
        raise SyntaxError(f"unsupported in-place operator {op}")
    return func(target, value)


def _apply(func: Any, *args: Any, **kwargs: Any) -> Any:
    return func(*args, **kwargs)


def _script_class(name: str, bases: tuple, namespace: dict[str, Any]) -> type:
    """Metaclass for classes a script defines; their instances accept attribute writes."""
    namespace.setdefault("_guarded_writes", True)
    return type(name, bases, namespace)


class ScriptPrintCollector(PrintCollector):
    """Collects ``print`` output and mirrors each call to the script logger."""

    def _call_print(self, *objects: Any, **kwargs: Any) -> None:
        sep = kwargs.get("sep") or " "
        logger.info("[SCRIPT] %s", sep.join(str(obj) for obj in objects))
        super()._call_print(*objects, **kwargs)


def compile_script(source: str) -> CodeType:
    """Compile script text, raising ``SyntaxError`` on restricted-policy violations."""
    if not isinstance(source, str):
        raise TypeError("script text must be a string")
    return compile_restricted(source, filename=SCRIPT_FILENAME, mode="exec")


def build_script_globals(platform: PlatformContext) -> dict[str, Any]:
    """Namespace a script is evaluated in: guards, helpers, and ``platform`` only."""
    builtins = dict(safe_builtins)
    builtins.update(_EXTRA_BUILTINS)
    return {
        "__builtins__": builtins,
        "__name__": "source_script",
        "__metaclass__": _script_class,
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_print_": ScriptPrintCollector,
        "_apply_": _apply,
        "json": SimpleNamespace(loads=json.loads, dumps=json.dumps),
        "math": math,
        "clock": SimpleNamespace(
            time=time.time,
            monotonic=time.monotonic,
            time_ms=lambda: int(time.time() * 1000),
        ),
        "Future": Future,
        "platform": platform,
    }
