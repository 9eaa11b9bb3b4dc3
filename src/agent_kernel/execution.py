# execution.py
# Tool Execution Service: the act phase's only way to run a tool.
#
# invoke() never raises. Unknown tools, malformed argument JSON and handler
# failures all come back as a failed ToolExecutionResult, so the kernel can
# show the failure to the model as an observation instead of aborting.

import json
import logging
import time

from agent_kernel.errors import ToolExecutionError, ToolNotFoundError
from agent_kernel.models import ToolExecutionResult
from agent_kernel.registry import ToolRegistry

logger = logging.getLogger(__name__)


def _parse_arguments(tool_name: str, arguments: str | None) -> dict:
    if arguments is None or not arguments.strip():
        return {}
    try:
        value = json.loads(arguments, strict=False)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(tool_name, f"Arguments are not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ToolExecutionError(tool_name, "Arguments must be a JSON object.")
    return value


class ToolExecutionService:
    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    async def invoke(self, tool_name: str, arguments: str | None) -> ToolExecutionResult:
        start = time.monotonic()
        args_text = arguments or "{}"

        try:
            tool = self._registry.get(tool_name)
            if tool is None:
                raise ToolNotFoundError(tool_name)

            logger.debug("Executing tool %s with args %s", tool_name, args_text)
            output = await tool.invoke(_parse_arguments(tool_name, arguments))

        except ToolNotFoundError as exc:
            logger.error("Tool not found: %s", tool_name)
            return self._failed(tool_name, args_text, str(exc), start)

        except ToolExecutionError as exc:
            logger.error("Tool %s failed: %s", tool_name, exc)
            return self._failed(tool_name, args_text, str(exc), start)

        except Exception as exc:
            logger.exception("Tool %s raised unexpectedly", tool_name)
            return self._failed(tool_name, args_text, f"{type(exc).__name__}: {exc}", start)

        duration = int((time.monotonic() - start) * 1000)
        logger.debug("Tool %s completed in %dms", tool_name, duration)
        return ToolExecutionResult(
            tool_name=tool_name,
            arguments=args_text,
            result=output,
            success=True,
            duration_ms=duration,
        )

    @staticmethod
    def _failed(tool_name: str, arguments: str, error: str, start: float) -> ToolExecutionResult:
        return ToolExecutionResult(
            tool_name=tool_name,
            arguments=arguments,
            success=False,
            error=error,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
