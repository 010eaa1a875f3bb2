"""Tests for the script sandbox: capabilities, validation and the JSON round trip."""

import asyncio
import json

import httpx
import pytest

from nodeflow.errors import ScriptError
from nodeflow.graph.sandbox import ScriptSandbox, compile_script, guarded_getattr, json_round_trip


def _sandbox_with_handler(handler, timeout: float = 5.0) -> ScriptSandbox:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ScriptSandbox(timeout=timeout, http_client=client)


class TestScriptExecution:
    @pytest.mark.asyncio
    async def test_returns_transformed_input(self):
        sandbox = ScriptSandbox()
        value = await sandbox.run("return {'v': input['v'] + 1}", {"v": 1})
        assert value == {"v": 2}

    @pytest.mark.asyncio
    async def test_no_return_is_none(self):
        sandbox = ScriptSandbox()
        assert await sandbox.run("x = 1") is None

    @pytest.mark.asyncio
    async def test_empty_script_is_none(self):
        sandbox = ScriptSandbox()
        assert await sandbox.run("   ") is None

    @pytest.mark.asyncio
    async def test_multiline_script(self):
        code = "total = 0\nfor item in input:\n    total += item\nreturn total"
        sandbox = ScriptSandbox()
        assert await sandbox.run(code, [1, 2, 3]) == 6

    @pytest.mark.asyncio
    async def test_input_is_not_mutated(self):
        original = {"v": 1, "items": [1]}
        sandbox = ScriptSandbox()
        value = await sandbox.run("input['v'] = 99\ninput['items'].append(2)\nreturn input", original)
        assert value == {"v": 99, "items": [1, 2]}
        assert original == {"v": 1, "items": [1]}

    @pytest.mark.asyncio
    async def test_safe_builtins_available(self):
        sandbox = ScriptSandbox()
        code = "print('computing')\nreturn {'n': len(input), 'root': math.sqrt(16), 'j': json.loads('[1]')}"
        assert await sandbox.run(code, [1, 2]) == {"n": 2, "root": 4.0, "j": [1]}


class TestScriptErrors:
    @pytest.mark.asyncio
    async def test_raised_exception_becomes_script_error(self):
        sandbox = ScriptSandbox()
        with pytest.raises(ScriptError, match="boom"):
            await sandbox.run("raise ValueError('boom')")

    @pytest.mark.asyncio
    async def test_key_error_message(self):
        sandbox = ScriptSandbox()
        with pytest.raises(ScriptError) as exc_info:
            await sandbox.run("return input['missing']", {})
        assert exc_info.value.message == "KeyError: 'missing'"

    @pytest.mark.asyncio
    async def test_syntax_error(self):
        sandbox = ScriptSandbox()
        with pytest.raises(ScriptError, match="Syntax error"):
            await sandbox.run("return (")

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={})

        sandbox = _sandbox_with_handler(slow, timeout=0.05)
        with pytest.raises(ScriptError, match="timed out"):
            await sandbox.run("await fetch('https://api.test/slow')\nreturn 1")
        await sandbox.aclose()


class TestScriptValidation:
    @pytest.mark.parametrize(
        "code,message",
        [
            ("import os", "Imports are not allowed"),
            ("from os import path", "Imports are not allowed"),
            ("open('/etc/passwd')", "Function 'open' is not allowed"),
            ("eval('1')", "Function 'eval' is not allowed"),
            ("getattr(fetch, 'x')", "Function 'getattr' is not allowed"),
            ("return input.__class__", '"__class__" is an invalid attribute name'),
            ("return __builtins__", '"__builtins__" is an invalid variable name'),
            ("global x", "global and nonlocal statements are not allowed"),
            ("yield 1", "yield is not allowed"),
        ],
    )
    def test_rejected_constructs(self, code, message):
        with pytest.raises(ScriptError, match=message):
            compile_script(code)

    def test_reports_script_line(self):
        with pytest.raises(ScriptError, match=r"\(line 2\)"):
            compile_script("x = 1\nimport os")

    def test_frame_attribute_blocked(self):
        with pytest.raises(ScriptError, match="cr_frame"):
            compile_script("return fetch('x').cr_frame")

    @pytest.mark.asyncio
    async def test_unbound_names_fail_at_runtime(self):
        sandbox = ScriptSandbox()
        with pytest.raises(ScriptError, match="process"):
            await sandbox.run("return process")

    @pytest.mark.asyncio
    async def test_tuple_unpacking_and_comprehensions(self):
        sandbox = ScriptSandbox()
        code = "a, b = input\npairs = [x * 2 for x in input]\nfor i, v in enumerate(pairs):\n    a += v\nreturn [a, b]"
        assert await sandbox.run(code, [1, 2]) == [7, 2]


class TestEnvironmentIsolation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code",
        [
            'return "{0.__globals__[logging].os.environ}".format(fetch)',
            'return "{0.__globals__}".format_map({"0": fetch})',
            'return str.format("{0.__globals__}", fetch)',
            'f = "{0.__globals__}".format\nreturn f(fetch)',
        ],
    )
    async def test_format_string_cannot_reach_globals(self, monkeypatch, code):
        monkeypatch.setenv("LIVEBLOCKS_SECRET_KEY", "sk_sandbox_secret")
        sandbox = ScriptSandbox()

        with pytest.raises(ScriptError) as exc_info:
            await sandbox.run(code)

        assert "format" in exc_info.value.message
        assert "sk_sandbox_secret" not in exc_info.value.message

    def test_guard_blocks_frames_and_format(self):
        with pytest.raises(AttributeError, match="cr_frame"):
            guarded_getattr(object(), "cr_frame")
        with pytest.raises(NotImplementedError):
            guarded_getattr(str, "format")
        assert guarded_getattr("abc", "upper")() == "ABC"

    @pytest.mark.asyncio
    async def test_fetch_globals_unreachable(self):
        sandbox = ScriptSandbox()
        with pytest.raises(ScriptError, match="invalid attribute name"):
            await sandbox.run("return fetch.__globals__")

    @pytest.mark.asyncio
    async def test_formatting_with_f_strings_still_works(self):
        sandbox = ScriptSandbox()
        assert await sandbox.run("return f\"{input['name']}: {input['n']:03d}\"", {"name": "a", "n": 7}) == "a: 007"


class TestFetchCapability:
    @pytest.mark.asyncio
    async def test_fetch_returns_response(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"items": [1, 2]})

        sandbox = _sandbox_with_handler(handler)
        code = (
            "r = await fetch('https://api.test/items', method='post', json={'q': input})\n"
            "return {'ok': r.ok, 'status': r.status, 'body': r.json()}"
        )
        value = await sandbox.run(code, "abc")
        await sandbox.aclose()

        assert value == {"ok": True, "status": 200, "body": {"items": [1, 2]}}
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {"q": "abc"}

    @pytest.mark.asyncio
    async def test_fetch_transport_error_surfaces_in_script(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sandbox = _sandbox_with_handler(handler)
        with pytest.raises(ScriptError, match="fetch failed"):
            await sandbox.run("return await fetch('https://api.test/down')")
        await sandbox.aclose()

    @pytest.mark.asyncio
    async def test_fetch_error_can_be_caught_by_script(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sandbox = _sandbox_with_handler(handler)
        code = "try:\n    await fetch('https://api.test/down')\nexcept RuntimeError:\n    return 'fallback'"
        assert await sandbox.run(code) == "fallback"
        await sandbox.aclose()


class TestJsonRoundTrip:
    def test_none_passes_through(self):
        assert json_round_trip(None) is None

    def test_tuple_becomes_list(self):
        assert json_round_trip((1, 2)) == [1, 2]

    def test_non_string_keys(self):
        assert json_round_trip({1: "a", None: "b", 2.5: "c"}) == {"1": "a", "null": "b", "2.5": "c"}

    def test_unserializable_members(self):
        assert json_round_trip({"a": {1, 2}, "b": 1}) == {"b": 1}
        assert json_round_trip([1, {1}]) == [1, None]

    def test_non_finite_floats_become_null(self):
        assert json_round_trip([float("nan"), float("inf"), 1.5]) == [None, None, 1.5]

    def test_unserializable_top_level(self):
        with pytest.raises(ScriptError, match="not JSON-serializable"):
            json_round_trip({1, 2})

    def test_cycle(self):
        data: dict = {}
        data["self"] = data
        with pytest.raises(ScriptError, match="circular"):
            json_round_trip(data)

    def test_shared_reference_is_not_a_cycle(self):
        shared = [1]
        assert json_round_trip({"a": shared, "b": shared}) == {"a": [1], "b": [1]}
