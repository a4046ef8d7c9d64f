"""Isolated evaluation of player-bundle transformation code.

Transformation functions are untrusted JavaScript. They are never handed to a
real JavaScript engine with host access; instead they run inside yt-dlp's
pure-Python interpreter (``yt_dlp.jsinterp``), which only understands the
string/array/arithmetic surface these functions use. The interpreter lives in
a separate worker process, and a call that overruns its wall-clock budget gets
the whole process killed, so a runaway loop cannot outlive the request.
"""

import asyncio
import hashlib
import logging
import multiprocessing
import re
import signal
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from yt_dlp.jsinterp import JSInterpreter

from .errors import SandboxCompileError, SandboxEvalError
from .extractor import split_prelude
from .models import CIPHER, N_SIG, EvaluationRequest, EvaluationResponse

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 250_000

_FUNCTION_RE = re.compile(r'^function\s*[\w$]*\s*\((?P<args>[^)]*)\)\s*\{')


class CodeEvaluator(Protocol):
    """Boundary to whatever executes transformation code."""

    async def evaluate(self, kind: str, code: str, arg_name: Optional[str],
                       inputs: List[str]) -> EvaluationResponse:
        ...


def _js_function(fn: Callable[..., Any]):
    # jsinterp calls host functions as f(argvals, allow_recursion=...)
    def call(args, *_, **__):
        return fn(*args)
    return call


def _mock_storage() -> Dict[str, Any]:
    store: Dict[str, str] = {}
    return {
        "getItem": _js_function(lambda key=None: store.get(str(key))),
        "setItem": _js_function(lambda key=None, value=None: store.__setitem__(str(key), str(value))),
        "removeItem": _js_function(lambda key=None: store.pop(str(key), None)),
        "clear": _js_function(store.clear),
    }


def mock_environment() -> Dict[str, Any]:
    """Minimal window-like globals so environment checks in bundle code do not throw."""
    window: Dict[str, Any] = {
        "location": {
            "href": "https://www.youtube.com/",
            "hostname": "www.youtube.com",
            "protocol": "https:",
        },
        "navigator": {
            "userAgent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        },
        "document": {
            "createElement": _js_function(lambda *_: {"style": {}}),
            "documentElement": {"style": {}},
        },
        "localStorage": _mock_storage(),
        "sessionStorage": _mock_storage(),
    }
    window["window"] = window
    window["self"] = window
    window["globalThis"] = window
    return window


def split_function(kind: str, code: str, arg_name: Optional[str]) -> Tuple[List[str], str]:
    """Return (argument names, body) for the given transformation source.

    n-sig code is a function expression ``function(a){...}``; cipher code is a
    bare function body taking a single argument named ``arg_name``. Either may
    be preceded by ``var X={...};`` helper objects, which the interpreter
    resolves from the full source on first use instead of executing them.
    """
    if len(code) > MAX_CODE_LENGTH:
        raise SandboxCompileError(kind, f"code too large ({len(code)} chars)")
    _, source = split_prelude(code)
    source = source.strip().rstrip(";").strip()
    if not source:
        raise SandboxCompileError(kind, "empty code")

    if kind == N_SIG:
        m = _FUNCTION_RE.match(source)
        if not m or not source.endswith("}"):
            raise SandboxCompileError(kind, "expected a function expression")
        argnames = [a.strip() for a in m.group("args").split(",") if a.strip()]
        return argnames or ["a"], source[m.end():-1]
    if kind == CIPHER:
        return [arg_name or "a"], source
    raise SandboxCompileError(kind, f"unknown transform kind {kind!r}")


def compile_transform(kind: str, code: str, arg_name: Optional[str]):
    """Build a callable for the transformation; raises SandboxCompileError."""
    argnames, body = split_function(kind, code, arg_name)
    try:
        interpreter = JSInterpreter(code)
        return interpreter.extract_function_from_code(argnames, body, mock_environment())
    except Exception as e:
        raise SandboxCompileError(kind, str(e) or type(e).__name__) from e


def _serve(conn):
    """Worker process loop: compile and call transforms on request."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    compiled: Dict[str, Any] = {}
    conn.send(("ready", None))
    while True:
        try:
            op, ref, payload = conn.recv()
        except EOFError:
            return
        if op == "forget":
            compiled.pop(ref, None)
            continue
        try:
            if op == "compile":
                compiled[ref] = compile_transform(*payload)
                reply = None
            else:
                reply = compiled[ref]([payload])
                if not isinstance(reply, str):
                    raise TypeError(f"returned {type(reply).__name__}, not a string")
        except SandboxEvalError as e:
            conn.send(("error", e.message))
        except Exception as e:
            conn.send(("error", str(e) or type(e).__name__))
        else:
            conn.send(("ok", reply))


class _Worker:
    """Child process owning the interpreter. Killed outright on a timeout."""

    def __init__(self, context):
        self.conn, child_conn = context.Pipe()
        self.process = context.Process(target=_serve, args=(child_conn,), name="vidsolve-sandbox", daemon=True)
        self.process.start()
        child_conn.close()
        self.compiled: "OrderedDict[str, None]" = OrderedDict()

    @property
    def alive(self) -> bool:
        return not self.conn.closed and self.process.is_alive()

    async def request(self, op: str, ref: str, payload: Any, timeout: float):
        self.conn.send((op, ref, payload))
        return await self.receive(timeout)

    async def receive(self, timeout: float):
        try:
            ready = await asyncio.to_thread(self.conn.poll, timeout)
        except asyncio.CancelledError:
            # a late reply would be read as the answer to the next request
            self.kill()
            raise
        if not ready:
            raise asyncio.TimeoutError()
        return self.conn.recv()

    def forget(self, ref: str):
        self.conn.send(("forget", ref, None))

    def kill(self):
        if self.process.is_alive():
            self.process.terminate()
            self.process.join(1.0)
            if self.process.is_alive():
                self.process.kill()
                self.process.join()
        if not self.conn.closed:
            self.conn.close()


def _code_ref(key: tuple) -> str:
    kind, code, arg_name = key
    return hashlib.sha1(f"{kind}\0{arg_name}\0{code}".encode()).hexdigest()


class CodeSandbox:
    """Runs transformation functions in a worker process with a per-call timeout.

    A call that overruns the timeout kills the worker. The remaining inputs of
    that batch fail without running, and the next batch starts a new worker.
    """

    def __init__(self, timeout: float = 2.0, max_compiled: int = 32, startup_timeout: float = 60.0):
        self.timeout = timeout
        self.max_compiled = max_compiled
        self.startup_timeout = startup_timeout
        self.compile_count = 0
        self._failed: "OrderedDict[tuple, SandboxCompileError]" = OrderedDict()
        self._worker: Optional[_Worker] = None
        self._lock = asyncio.Lock()
        self._context = multiprocessing.get_context("spawn")

    @property
    def worker_process(self):
        return self._worker.process if self._worker is not None else None

    async def start(self) -> _Worker:
        """Return the running worker, spawning one if needed."""
        if self._worker is not None and self._worker.alive:
            return self._worker
        self.close()
        worker = _Worker(self._context)
        try:
            await worker.receive(self.startup_timeout)
        except BaseException:
            worker.kill()
            raise
        logger.debug(f"Sandbox worker started (pid {worker.process.pid})")
        self._worker = worker
        return worker

    def close(self):
        """Stop the worker process, if one is running."""
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.kill()

    def clear(self):
        self._failed.clear()
        self.close()

    async def run(self, request: EvaluationRequest) -> EvaluationResponse:
        return await self.evaluate(request.kind, request.code, request.arg_name, request.inputs)

    async def evaluate(self, kind: str, code: str, arg_name: Optional[str],
                       inputs: List[str]) -> EvaluationResponse:
        """Transform every input; failed slots keep their original value."""
        inputs = list(inputs)
        key = (kind, code, arg_name)
        async with self._lock:
            try:
                worker = await self.start()
                error = await self._compile(worker, key)
            except (asyncio.TimeoutError, EOFError, OSError) as e:
                self.close()
                error = SandboxEvalError(kind, f"sandbox worker unavailable ({str(e) or type(e).__name__})")
            if error is not None:
                logger.warning(f"Sandbox compile failed: {error}")
                return EvaluationResponse(results=inputs, errors=[error])
            results, errors = await self._call_all(worker, kind, _code_ref(key), inputs)

        if errors:
            logger.warning(f"Sandbox {kind}: {len(errors)} of {len(inputs)} inputs failed")
        return EvaluationResponse(results=results, errors=errors)

    async def _compile(self, worker: _Worker, key: tuple) -> Optional[SandboxCompileError]:
        if key in self._failed:
            self._failed.move_to_end(key)
            return self._failed[key]
        ref = _code_ref(key)
        if ref in worker.compiled:
            worker.compiled.move_to_end(ref)
            return None

        kind, code, _ = key
        error = None
        if len(code) > MAX_CODE_LENGTH:
            error = SandboxCompileError(kind, f"code too large ({len(code)} chars)")
        else:
            try:
                status, payload = await worker.request("compile", ref, key, self.timeout)
            except asyncio.TimeoutError:
                self.close()
                error = SandboxCompileError(kind, f"compile timed out after {self.timeout}s")
            else:
                if status == "error":
                    error = SandboxCompileError(kind, payload)
        self.compile_count += 1

        if error is not None:
            self._failed[key] = error
            while len(self._failed) > self.max_compiled:
                self._failed.popitem(last=False)
            return error
        worker.compiled[ref] = None
        while len(worker.compiled) > self.max_compiled:
            old, _ = worker.compiled.popitem(last=False)
            worker.forget(old)
        return None

    async def _call_all(self, worker: Optional[_Worker], kind: str, ref: str,
                        inputs: List[str]) -> Tuple[List[str], List[Exception]]:
        results: List[str] = []
        errors: List[Exception] = []
        for index, value in enumerate(inputs):
            results.append(value)
            if worker is None:
                errors.append(SandboxEvalError(kind, "not run: sandbox worker was stopped", index))
                continue
            try:
                status, payload = await worker.request("call", ref, value, self.timeout)
            except asyncio.TimeoutError:
                errors.append(SandboxEvalError(kind, f"timed out after {self.timeout}s", index))
                self.close()
                worker = None
                continue
            except (EOFError, OSError) as e:
                errors.append(SandboxEvalError(kind, f"sandbox worker exited ({str(e) or type(e).__name__})", index))
                self.close()
                worker = None
                continue

            if status == "ok":
                results[index] = payload
            else:
                errors.append(SandboxEvalError(kind, payload, index))
        return results, errors
