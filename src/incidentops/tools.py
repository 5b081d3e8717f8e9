"""
Remediation tool execution

A ToolExecutor runs named tools on named services and returns a structured
result dict. ToolRegistry is the injectable implementation: register real
tool callables for production, or use ``simulated_tool_registry()`` for
dry runs.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from .exceptions import ToolLookupError

logger = logging.getLogger(__name__)

ToolFunc = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


@runtime_checkable
class ToolExecutor(Protocol):
    async def execute_tool(
        self, service_name: str, tool_name: str, args: dict[str, Any]
    ) -> dict[str, Any]: ...


class ToolRegistry:
    """Maps (service, tool) names to async tool callables"""

    def __init__(self):
        self._services: dict[str, dict[str, ToolFunc]] = {}

    def register(self, service_name: str, tool_name: str, func: ToolFunc) -> None:
        self._services.setdefault(service_name, {})[tool_name] = func
        logger.debug(f"Registered tool {service_name}.{tool_name}")

    def list_tools(self) -> dict[str, list[str]]:
        return {service: sorted(tools) for service, tools in self._services.items()}

    async def execute_tool(
        self, service_name: str, tool_name: str, args: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Raises:
            ToolLookupError: If the service or tool is not registered
        """
        tools = self._services.get(service_name)
        if tools is None:
            raise ToolLookupError(f"Unknown tool service: {service_name}")
        func = tools.get(tool_name)
        if func is None:
            raise ToolLookupError(f"Unknown tool '{tool_name}' on service {service_name}")
        return await func(args)


def _simulated(tool_name: str, result_fields: Callable[[dict[str, Any]], dict[str, Any]]) -> ToolFunc:
    async def run(args: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(0)
        logger.info(f"[simulated] {tool_name} on {args.get('target', 'unknown')}")
        return {"success": True, "status": "completed", "simulated": True, **result_fields(args)}

    return run


def simulated_tool_registry(service_name: str = "remediation") -> ToolRegistry:
    """Registry whose tools report success without touching any system"""
    registry = ToolRegistry()
    simulated = {
        "restart_service": lambda a: {"service_running": True},
        "scale_resources": lambda a: {"replicas": a.get("params", {}).get("replicas")},
        "clear_cache": lambda a: {"cache_cleared": True},
        "update_configuration": lambda a: {"configuration_applied": True},
        "restore_configuration": lambda a: {"configuration_applied": True},
        "check_service_health": lambda a: {"service_running": True},
        "verify_system_health": lambda a: {"healthy": True},
    }
    for tool_name, fields in simulated.items():
        registry.register(service_name, tool_name, _simulated(tool_name, fields))
    return registry
