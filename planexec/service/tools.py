from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from planexec.logging import get_logger
from planexec.service.errors import ToolError

ToolHandler = Callable[[Dict[str, Any]], Any]


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: Optional[str] = None


class ToolExecutor(Protocol):
    """Anything that can run a named tool with resolved params."""

    async def execute(self, tool: str, params: Dict[str, Any]) -> ToolResult:
        ...


@dataclass
class ToolSpec:
    name: str
    handler: ToolHandler
    input_schema: Optional[dict] = None
    timeout_seconds: Optional[float] = None


class ToolRegistry:
    """In-process ToolExecutor backed by registered handlers.

    Coroutine handlers are awaited on the event loop; plain callables run on a
    bounded thread pool so blocking tools never stall the coordinator.
    """

    DEFAULT_TOOL_WORKERS = 8
    MAX_TOOL_WORKERS = 16

    def __init__(self, *, tool_workers: int = DEFAULT_TOOL_WORKERS) -> None:
        self.logger = get_logger(__name__)
        self._tools: Dict[str, ToolSpec] = {}
        workers = min(max(1, tool_workers), self.MAX_TOOL_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="planexec-tool"
        )
        self._executor_shutdown = False

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        input_schema: Optional[dict] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        if input_schema is not None:
            try:
                Draft202012Validator.check_schema(input_schema)
            except SchemaError as exc:
                raise ValueError(f"invalid input schema for tool {name}: {exc.message}") from exc
        self._tools[name] = ToolSpec(
            name=name,
            handler=handler,
            input_schema=input_schema,
            timeout_seconds=timeout_seconds,
        )

    def tool(
        self,
        name: str,
        *,
        input_schema: Optional[dict] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(
                name, handler, input_schema=input_schema, timeout_seconds=timeout_seconds
            )
            return handler

        return decorator

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return sorted(self._tools)

    def _validate_params(self, spec: ToolSpec, params: Dict[str, Any]) -> List[str]:
        if not spec.input_schema:
            return []
        validator = Draft202012Validator(spec.input_schema)
        errors = sorted(validator.iter_errors(params), key=lambda e: [str(p) for p in e.path])
        return [e.message for e in errors]

    async def execute(self, tool: str, params: Dict[str, Any]) -> ToolResult:
        spec = self._tools.get(tool)
        if spec is None:
            raise ToolError(f"unknown tool {tool}", retryable=False, code="unknown_tool")

        problems = self._validate_params(spec, params)
        if problems:
            raise ToolError(
                f"tool {tool} params failed validation",
                retryable=False,
                code="validation_error",
                detail={"errors": problems},
            )

        if inspect.iscoroutinefunction(spec.handler):
            call = spec.handler(params)
        else:
            if self._executor_shutdown:
                raise ToolError("tool executor is shut down", retryable=False)
            loop = asyncio.get_running_loop()
            call = loop.run_in_executor(self._executor, functools.partial(spec.handler, params))

        try:
            if spec.timeout_seconds:
                outcome = await asyncio.wait_for(call, timeout=spec.timeout_seconds)
            else:
                outcome = await call
        except asyncio.TimeoutError as exc:
            self.logger.warning("tool_timeout", tool=tool, timeout=spec.timeout_seconds)
            raise ToolError(
                f"tool {tool} timed out after {spec.timeout_seconds}s",
                retryable=True,
                code="ETIMEDOUT",
            ) from exc

        if isinstance(outcome, ToolResult):
            return outcome
        return ToolResult(success=True, data=outcome)

    def shutdown(self, wait: bool = True) -> None:
        """Release the worker threads. Safe to call more than once."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self.logger.info("tool_executor_shutdown", wait=wait)
