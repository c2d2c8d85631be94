from __future__ import annotations

import ast
import asyncio
import inspect
import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from browser_sandbox.context import ContextOptions, ExecutionContext, new_context
from browser_sandbox.errors import RunnerError, ScriptError, ScriptTimeoutError
from browser_sandbox.session import BrowserSession, SessionProvider, is_browser_infra_error


LOGGER = logging.getLogger("script-runner.executor")

DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_SUCCESS_DATA: dict[str, str] = {"message": "Script exécuté avec succès"}

SCRIPT_FILENAME = "<script>"
SCRIPT_FUNCTION_NAME = "__script__"
HANDLE_NAMES = ("page", "context", "browser")

_WRAPPER_SOURCE = f"async def {SCRIPT_FUNCTION_NAME}({', '.join(HANDLE_NAMES)}):\n    pass\n"


def compile_script(script: str) -> Callable[..., Awaitable[Any]]:
    """
    Turn a script body into `async def __script__(page, context, browser)`.

    The body is parsed on its own and grafted into the wrapper's AST, so string
    literals and line numbers in tracebacks stay exactly as the client wrote them.
    The compiled code runs with the host's builtins: there is no sandbox here.
    """
    try:
        body = ast.parse(script or "", filename=SCRIPT_FILENAME, mode="exec").body
        wrapper = ast.parse(_WRAPPER_SOURCE, filename=SCRIPT_FILENAME, mode="exec")
        fn_def = wrapper.body[0]
        if body:
            fn_def.body = body
        ast.fix_missing_locations(wrapper)
        code = compile(wrapper, SCRIPT_FILENAME, "exec")
    except (SyntaxError, ValueError) as exc:
        raise ScriptError(_syntax_message(exc)) from exc

    namespace: dict[str, Any] = {"__name__": SCRIPT_FUNCTION_NAME, "asyncio": asyncio}
    exec(code, namespace)  # noqa: S102
    return namespace[SCRIPT_FUNCTION_NAME]


def _syntax_message(exc: Exception) -> str:
    if isinstance(exc, SyntaxError):
        where = f" (line {exc.lineno})" if exc.lineno else ""
        return f"SyntaxError: {exc.msg}{where}"
    return f"{type(exc).__name__}: {exc}"


def _consume_abandoned(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.debug("Abandoned script finished with %s: %s", type(exc).__name__, exc)


async def guard_script(call: Awaitable[Any]) -> Any:
    """
    Await a script call, turning anything that is not an `Exception` into a ScriptError.

    `SystemExit`, `KeyboardInterrupt` or a self-raised `CancelledError` would otherwise
    escape the task and stop the event loop or the request. Only a cancellation asked
    for from outside (loop shutdown) is let through.
    """
    try:
        return await call
    except (Exception, GeneratorExit):
        raise
    except asyncio.CancelledError as exc:
        task = asyncio.current_task()
        if task is not None and task.cancelling():
            raise
        raise ScriptError(_base_exception_message(exc)) from exc
    except BaseException as exc:
        raise ScriptError(_base_exception_message(exc)) from exc


def _base_exception_message(exc: BaseException) -> str:
    name = type(exc).__name__
    return f"{name}: {exc}" if str(exc) else name


async def race_timeout(awaitable: Awaitable[Any], timeout_ms: int) -> Any:
    """
    Wait for `awaitable` at most `timeout_ms`.

    On timeout the task is left running and detached; only the caller's teardown
    (closing the context or browser) stops whatever it was doing in the browser.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _pending = await asyncio.wait({task}, timeout=max(0, int(timeout_ms)) / 1000.0)
    except asyncio.CancelledError:
        task.add_done_callback(_consume_abandoned)
        raise
    if task in done:
        return task.result()
    task.add_done_callback(_consume_abandoned)
    raise ScriptTimeoutError()


@dataclass(frozen=True)
class ExecutionResult:
    ok: bool
    data: Any = None
    error_kind: str | None = None
    error_message: str | None = None
    stack: str | None = None
    elapsed_ms: float | None = None
    status_code: int = 200

    @classmethod
    def success(cls, value: Any, *, elapsed_ms: float | None = None) -> ExecutionResult:
        data = dict(DEFAULT_SUCCESS_DATA) if value is None else value
        return cls(ok=True, data=data, elapsed_ms=elapsed_ms)

    @classmethod
    def failure(
        cls,
        exc: BaseException,
        *,
        include_stack: bool = False,
        elapsed_ms: float | None = None,
    ) -> ExecutionResult:
        if isinstance(exc, RunnerError):
            kind, status_code = exc.kind, exc.status_code
        else:
            kind, status_code = ScriptError.kind, ScriptError.status_code
        stack = None
        if include_stack:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            ok=False,
            error_kind=kind,
            error_message=str(exc) or type(exc).__name__,
            stack=stack,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
        )


class ScriptExecutor:
    def __init__(
        self,
        provider: SessionProvider,
        *,
        context_options: ContextOptions | None = None,
        include_stack: bool = False,
    ) -> None:
        self.provider = provider
        self.context_options = context_options or ContextOptions()
        self.include_stack = bool(include_stack)

    async def run(self, script: str, timeout_ms: int, execution: ExecutionContext) -> ExecutionResult:
        """Run one script inside `execution`, then tear it down whatever happened."""
        started = time.perf_counter()
        try:
            fn = compile_script(script)
            call = fn(execution.page, execution.context, execution.session.browser)
            if not inspect.isawaitable(call):
                raise ScriptError("script_must_not_yield")
            LOGGER.info("Running user script timeout_ms=%s", timeout_ms)
            value = await race_timeout(guard_script(call), timeout_ms)
        except Exception as exc:
            elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
            result = ExecutionResult.failure(exc, include_stack=self.include_stack, elapsed_ms=elapsed_ms)
            if is_browser_infra_error(exc):
                LOGGER.warning("Script failed on browser infra error kind=%s: %s", result.error_kind, result.error_message)
            else:
                LOGGER.info("Script failed kind=%s elapsed_ms=%s: %s", result.error_kind, elapsed_ms, result.error_message)
            return result
        finally:
            await self._teardown(execution)

        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        LOGGER.info("Script succeeded elapsed_ms=%s", elapsed_ms)
        return ExecutionResult.success(value, elapsed_ms=elapsed_ms)

    async def execute(
        self,
        script: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        options: ContextOptions | None = None,
    ) -> ExecutionResult:
        """Acquire a session, derive a fresh context and run `script` in it."""
        started = time.perf_counter()
        try:
            session = await self.provider.acquire()
        except RunnerError as exc:
            LOGGER.error("Browser launch failed: %s", exc)
            return ExecutionResult.failure(
                exc,
                include_stack=self.include_stack,
                elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
            )

        try:
            execution = await new_context(session, options or self.context_options)
        except RunnerError as exc:
            LOGGER.error("Browser context setup failed: %s", exc)
            await self._release(session)
            return ExecutionResult.failure(
                exc,
                include_stack=self.include_stack,
                elapsed_ms=round((time.perf_counter() - started) * 1000.0, 3),
            )

        return await self.run(script, timeout_ms, execution)

    async def _teardown(self, execution: ExecutionContext) -> None:
        try:
            await execution.close()
        except Exception:
            LOGGER.warning("Execution context teardown failed", exc_info=True)
        await self._release(execution.session)

    async def _release(self, session: BrowserSession) -> None:
        try:
            await self.provider.release(session)
        except Exception:
            LOGGER.warning("Browser session release failed", exc_info=True)
