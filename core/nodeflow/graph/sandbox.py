"""
Sandbox Executor - runs one node's script under RestrictedPython.

A script is the body of an ``async`` function. It sees exactly two bindings,
``input`` (the upstream node's result) and ``fetch`` (an outbound HTTP
request primitive), plus a fixed set of safe builtins. Attribute, item and
iteration access go through RestrictedPython guards, so underscore names,
frame handles and ``str.format`` field lookups never reach interpreter
internals. The return value goes through a JSON round trip before it becomes
the node's result.

Example:
    sandbox = ScriptSandbox(timeout=5.0)
    value = await sandbox.run("return {'v': input['v'] + 1}", {"v": 1})
    # value == {"v": 2}

Known limitations: the wall-clock limit is enforced with asyncio.wait_for, so
it interrupts a script at its next await. A CPU-bound loop that never awaits
blocks the event loop until it finishes. Augmented assignment works on plain
names only (``total += 1``, not ``data['n'] += 1``).
"""

import ast
import asyncio
import copy
import json as _json
import logging
import math
import operator
import textwrap
from collections.abc import Callable, Mapping
from datetime import date, datetime
from typing import Any

import httpx
from RestrictedPython import RestrictingNodeTransformer, compile_restricted_exec, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

from nodeflow.errors import ScriptError

logger = logging.getLogger(__name__)

SCRIPT_FUNCTION_NAME = "nodeflow_script"

# Calls rejected up front with a readable message (none of them are bound anyway)
BLOCKED_CALLS = frozenset(
    {
        "eval",
        "exec",
        "compile",
        "open",
        "__import__",
        "getattr",
        "setattr",
        "delattr",
        "globals",
        "locals",
        "vars",
        "dir",
        "breakpoint",
        "help",
        "exit",
        "quit",
    }
)

# Frame and code handles on coroutines, generators and tracebacks lead back
# to module globals
BLOCKED_ATTRIBUTES = frozenset(
    {
        "ag_await",
        "ag_code",
        "ag_frame",
        "cr_await",
        "cr_code",
        "cr_frame",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "tb_frame",
        "tb_next",
    }
)


# ---------------------------------------------------------------------------
# JSON round trip
# ---------------------------------------------------------------------------

_UNDEFINED = object()


def _json_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    if key is None or isinstance(key, (bool, int, float)):
        return _json.dumps(key)
    raise ScriptError(f"Object keys must be str, int, float, bool or None, not {type(key).__name__}")


def _to_json(value: Any, active: set[int]) -> Any:
    """Convert ``value`` to plain JSON, or _UNDEFINED if it has no JSON form."""
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "model_dump") and not isinstance(value, type):
        value = value.model_dump(mode="json")
    elif callable(getattr(value, "to_json", None)) and not isinstance(value, type):
        value = value.to_json()
        if isinstance(value, str) or value is None:
            return value

    if isinstance(value, Mapping):
        marker = id(value)
        if marker in active:
            raise ScriptError("Converting circular structure to JSON")
        active.add(marker)
        try:
            out = {}
            for key, item in value.items():
                converted = _to_json(item, active)
                if converted is not _UNDEFINED:
                    out[_json_key(key)] = converted
            return out
        finally:
            active.discard(marker)

    if isinstance(value, (list, tuple)):
        marker = id(value)
        if marker in active:
            raise ScriptError("Converting circular structure to JSON")
        active.add(marker)
        try:
            items = []
            for item in value:
                converted = _to_json(item, active)
                items.append(None if converted is _UNDEFINED else converted)
            return items
        finally:
            active.discard(marker)

    return _UNDEFINED


def json_round_trip(value: Any) -> Any:
    """Return what ``JSON.parse(JSON.stringify(value))`` would produce.

    ``None`` stands for "no value" and is returned unchanged. Inside a mapping,
    entries with no JSON form are dropped; inside a list they become ``None``.
    A top-level value with no JSON form, or a cyclic structure, raises
    ScriptError.
    """
    if value is None:
        return None
    try:
        converted = _to_json(value, set())
    except RecursionError:
        raise ScriptError("Result is nested too deeply to serialize") from None
    if converted is _UNDEFINED:
        raise ScriptError(f"Script returned a value that is not JSON-serializable: {type(value).__name__}")
    return converted


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class FetchResponse:
    """Plain-data view of an HTTP response handed to scripts."""

    def __init__(self, status: int, headers: dict[str, str], text: str, url: str):
        self.status = status
        self.ok = 200 <= status < 300
        self.headers = headers
        self.text = text
        self.url = url

    def json(self) -> Any:
        return _json.loads(self.text)

    def __repr__(self) -> str:
        return f"<FetchResponse {self.status} {self.url}>"


def make_fetch(client: httpx.AsyncClient, default_timeout: float) -> Callable:
    """Bind an outbound-request primitive to ``client``."""

    async def fetch(
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        json: Any = None,
        data: Any = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> FetchResponse:
        try:
            response = await client.request(
                method.upper(),
                url,
                headers=headers,
                json=json,
                data=data,
                params=params,
                timeout=timeout if timeout is not None else default_timeout,
            )
        except httpx.HTTPError as e:
            # Surfaces inside the script like any other exception
            raise RuntimeError(f"fetch failed: {e}") from None
        return FetchResponse(
            status=response.status_code,
            headers=dict(response.headers),
            text=response.text,
            url=str(response.url),
        )

    return fetch


class _SafeJson:
    """Restricted JSON interface."""

    @staticmethod
    def loads(s: str) -> Any:
        return _json.loads(s)

    @staticmethod
    def dumps(obj: Any, indent: int | None = None, sort_keys: bool = False) -> str:
        return _json.dumps(obj, indent=indent, sort_keys=sort_keys)


class _SafeMath:
    """Restricted math interface."""

    ceil = staticmethod(math.ceil)
    floor = staticmethod(math.floor)
    sqrt = staticmethod(math.sqrt)
    pow = staticmethod(math.pow)
    log = staticmethod(math.log)
    log10 = staticmethod(math.log10)
    exp = staticmethod(math.exp)
    fabs = staticmethod(math.fabs)
    isfinite = staticmethod(math.isfinite)
    pi = math.pi
    e = math.e
    inf = math.inf


class ScriptPrintCollector:
    """Stands in for ``print`` inside scripts; each call becomes a log line."""

    def __init__(self, _getattr_=None):
        self.lines: list[str] = []

    def _call_print(self, *objects: Any, sep: str = " ", end: str = "\n", **kwargs: Any) -> None:
        line = sep.join(str(o) for o in objects)
        self.lines.append(line + end)
        logger.info(line, extra={"event": "script_print"})

    def __call__(self) -> str:
        return "".join(self.lines)


SAFE_BUILTINS: dict[str, Any] = {
    **safe_builtins,
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "chr": chr,
    "dict": dict,
    "divmod": divmod,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "ord": ord,
    "pow": pow,
    "range": range,
    "repr": repr,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "Exception": Exception,
    "ValueError": ValueError,
    "TypeError": TypeError,
    "KeyError": KeyError,
    "IndexError": IndexError,
    "RuntimeError": RuntimeError,
    "ZeroDivisionError": ZeroDivisionError,
    "json": _SafeJson(),
    "math": _SafeMath(),
}


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

_INPLACE_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
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


def guarded_getattr(ob: Any, name: str, default: Any = None) -> Any:
    """RestrictedPython ``_getattr_`` hook."""
    if name in BLOCKED_ATTRIBUTES:
        raise AttributeError(f"Access to '{name}' is not allowed")
    # Format fields can walk attributes of the arguments, on instances and on str itself
    if name in ("format", "format_map") and (
        isinstance(ob, str) or (isinstance(ob, type) and issubclass(ob, str))
    ):
        raise NotImplementedError("Using the format*() methods of `str` is not safe")
    return safer_getattr(ob, name, default)


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    return _INPLACE_OPERATORS[op](x, y)


def _apply(func: Callable, *args: Any, **kwargs: Any) -> Any:
    return func(*args, **kwargs)


def _script_globals() -> dict[str, Any]:
    return {
        "__builtins__": SAFE_BUILTINS,
        "__name__": SCRIPT_FUNCTION_NAME,
        "__metaclass__": type,
        "_getattr_": guarded_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
        "_print_": ScriptPrintCollector,
    }


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


class ScriptPolicy(RestrictingNodeTransformer):
    """
    RestrictedPython policy for node scripts.

    On top of the stock restrictions it admits the ``async def`` wrapper and
    ``await`` a script needs for ``await fetch(...)``, and rejects imports, scope
    statements, generators and frame attributes at compile time. Errors are
    reported against script lines, not the wrapper function.
    """

    def error(self, node: ast.AST, info: str) -> None:
        line = getattr(node, "lineno", None)
        self.errors.append(f"{info} (line {line - 1})" if line else info)

    visit_AsyncFunctionDef = RestrictingNodeTransformer.visit_FunctionDef

    def visit_Await(self, node: ast.Await) -> ast.AST:
        return self.node_contents_visit(node)

    def visit_Import(self, node: ast.Import) -> ast.AST:
        self.error(node, "Imports are not allowed")
        return node

    visit_ImportFrom = visit_Import

    def visit_Global(self, node: ast.Global) -> ast.AST:
        self.error(node, "global and nonlocal statements are not allowed")
        return node

    visit_Nonlocal = visit_Global

    def visit_Yield(self, node: ast.Yield) -> ast.AST:
        self.error(node, "yield is not allowed in a node script")
        return node

    visit_YieldFrom = visit_Yield

    def visit_Attribute(self, node: ast.Attribute) -> ast.AST:
        if node.attr in BLOCKED_ATTRIBUTES:
            self.error(node, f"Access to '{node.attr}' is not allowed")
        return super().visit_Attribute(node)

    def visit_Call(self, node: ast.Call) -> ast.AST:
        if isinstance(node.func, ast.Name) and node.func.id in BLOCKED_CALLS:
            self.error(node, f"Function '{node.func.id}' is not allowed")
        return super().visit_Call(node)


def compile_script(code: str, filename: str = "<node>") -> Callable:
    """Compile script source into an async function of (input, fetch)."""
    body = textwrap.indent(code, "    ") if code.strip() else "    pass"
    source = f"async def {SCRIPT_FUNCTION_NAME}(input, fetch):\n{body}\n"
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError as e:
        line = (e.lineno or 1) - 1
        raise ScriptError(f"Syntax error: {e.msg} (line {line})") from None

    if len(tree.body) != 1 or not isinstance(tree.body[0], ast.AsyncFunctionDef):
        # Dedented code escaped the wrapper function
        raise ScriptError("Syntax error: unexpected indentation in script")

    result = compile_restricted_exec(tree, filename=filename, policy=ScriptPolicy)
    if result.errors:
        raise ScriptError("; ".join(result.errors))

    namespace = _script_globals()
    exec(result.code, namespace)
    return namespace[SCRIPT_FUNCTION_NAME]


def _error_message(exc: BaseException) -> str:
    message = str(exc)
    if isinstance(exc, KeyError) and exc.args:
        message = f"KeyError: {exc.args[0]!r}"
    return message or type(exc).__name__


class ScriptSandbox:
    """
    Runs node scripts against ``{input, fetch}``.

    One sandbox (and its HTTP client) is shared by every run in the process;
    each invocation gets a fresh namespace and a deep copy of its input.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        fetch_timeout: float = 30.0,
    ):
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._fetch_timeout = fetch_timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def run(self, code: str, input: Any = None, node_id: str = "") -> Any:
        """Execute ``code`` and return its JSON-normalized result.

        Returns None when the script returns nothing. Raises ScriptError for a
        rejected, failing, timed-out or non-serializable script.
        """
        script = compile_script(code, filename=f"<node:{node_id or 'script'}>")
        fetch = make_fetch(self._get_client(), self._fetch_timeout)

        try:
            value = await asyncio.wait_for(script(copy.deepcopy(input), fetch), timeout=self.timeout)
        except TimeoutError:
            raise ScriptError(f"Script execution timed out after {self.timeout:g}s") from None
        except ScriptError:
            raise
        except Exception as e:
            logger.debug(f"Script raised {type(e).__name__}: {e}", extra={"node_id": node_id})
            raise ScriptError(_error_message(e)) from e

        return json_round_trip(value)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
