"""Schema-enforcing tool execution gateway with timeout/retry telemetry."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from typing import Any

from pydantic import ValidationError

from agent_planner.errors import InvalidInputError, PlannerError, UpstreamUnavailableError
from agent_planner.tools.registry import ToolSpec

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Execute registered tools with strict validation and retry/timeout controls.

    Only errors flagged ``retryable`` are retried; everything else fails the
    call on the first attempt.
    """

    def __init__(
        self,
        *,
        registry: dict[str, ToolSpec],
        tool_timeout_s: float = 10.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.registry = registry
        self.tool_timeout_s = tool_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def execute(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        started_at = time.perf_counter()
        attempts = 0
        final_error: PlannerError = PlannerError("unknown error")
        implementation = (
            self.registry[tool_name].implementation if tool_name in self.registry else "unknown"
        )

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                output = self._execute_once(tool_name, args)
                return {
                    "tool": tool_name,
                    "status": "ok",
                    "output": output,
                    "implementation": implementation,
                    "attempts": attempts,
                    "duration_ms": _duration_ms(started_at),
                }
            except PlannerError as exc:
                final_error = exc
            except Exception as exc:  # noqa: BLE001
                logger.exception("tool_call event=crashed tool=%s", tool_name)
                final_error = PlannerError(f"{type(exc).__name__}: {exc}")
            logger.warning(
                "tool_call event=failed tool=%s attempt=%d/%d code=%s retryable=%s reason=%s",
                tool_name,
                attempts,
                self.max_retries + 1,
                final_error.code,
                final_error.retryable,
                final_error.message,
            )
            if not final_error.retryable:
                break
            if attempt < self.max_retries and self.backoff_s > 0:
                time.sleep(self.backoff_s * (2**attempt))

        return {
            "tool": tool_name,
            "status": "failed",
            "error": {**final_error.to_payload(), "retryable": final_error.retryable},
            "implementation": implementation,
            "attempts": attempts,
            "duration_ms": _duration_ms(started_at),
        }

    def _execute_once(self, tool_name: str, args: dict[str, Any]) -> dict[str, Any]:
        spec = self.registry.get(tool_name)
        if spec is None:
            raise InvalidInputError(f"Unknown tool: {tool_name}")

        try:
            payload = spec.input_model.model_validate(args)
        except ValidationError as exc:
            raise InvalidInputError(
                f"Invalid input for tool '{tool_name}'",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(spec.fn, payload)
            raw_output = future.result(timeout=self.tool_timeout_s)
        except TimeoutError as exc:
            raise UpstreamUnavailableError(
                f"Tool '{tool_name}' timed out after {self.tool_timeout_s:.2f}s"
            ) from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        validated_output = spec.output_model.model_validate(raw_output)
        return validated_output.model_dump(mode="json")


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
