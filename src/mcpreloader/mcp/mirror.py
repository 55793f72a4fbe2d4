"""
Capability mirror.

Caches what the child server advertises (tools, prompts, resources,
resource templates) so tool listings can be answered locally and
always include the proxy's own synthetic tools.

fetch() only reads from the child and returns a snapshot; installing
it is a separate, synchronous replace() so the supervisor can swap
endpoint and snapshot together.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Sequence

from mcp import types
from mcp.shared.exceptions import McpError

from ..errors import CapabilityQueryDegraded, CapabilityQueryFatal, ChildUnavailable
from ..models import EMPTY_SNAPSHOT, CapabilitySnapshot

if TYPE_CHECKING:
    from .supervisor import ChildEndpoint

logger = logging.getLogger(__name__)

MAX_PAGES = 100

# (category, method, request type, result type, result field)
_TOOLS = ("tools", "tools/list", types.ListToolsRequest, types.ListToolsResult, "tools")
_PROMPTS = ("prompts", "prompts/list", types.ListPromptsRequest, types.ListPromptsResult, "prompts")
_RESOURCES = ("resources", "resources/list", types.ListResourcesRequest, types.ListResourcesResult, "resources")
_TEMPLATES = (
    "resource templates",
    "resources/templates/list",
    types.ListResourceTemplatesRequest,
    types.ListResourceTemplatesResult,
    "resourceTemplates",
)


class CapabilityMirror:
    """Holds the current CapabilitySnapshot plus the proxy-owned tools."""

    def __init__(self, synthetic_tools: Sequence[types.Tool] = ()):
        self._snapshot: CapabilitySnapshot = EMPTY_SNAPSHOT
        self._synthetic = list(synthetic_tools)

    @property
    def snapshot(self) -> CapabilitySnapshot:
        return self._snapshot

    @property
    def synthetic_tool_names(self) -> set[str]:
        return {t.name for t in self._synthetic}

    def replace(self, snapshot: CapabilitySnapshot) -> None:
        self._snapshot = snapshot
        logger.debug(
            f"Mirrored child capabilities (generation {snapshot.generation}): "
            f"{snapshot.summary()}, tools={snapshot.tool_names}"
        )

    def clear(self) -> None:
        self._snapshot = EMPTY_SNAPSHOT

    def list_tools(self) -> list[types.Tool]:
        """Child tools followed by the synthetic tools."""
        reserved = self.synthetic_tool_names
        child_tools = [t for t in self._snapshot.tools if t.name not in reserved]
        return child_tools + self._synthetic

    async def fetch(self, endpoint: ChildEndpoint) -> CapabilitySnapshot:
        """
        Query the child for everything it can list.

        Tools are always queried. Prompts and resources are only queried
        when the child declared the capability during the handshake.
        A missing method yields an empty category; any other failure
        raises CapabilityQueryFatal.
        """
        declared = endpoint.server_capabilities
        tools = await self._query(endpoint, _TOOLS)

        prompts: tuple = ()
        if declared is not None and declared.prompts is not None:
            prompts = await self._query(endpoint, _PROMPTS)

        resources: tuple = ()
        templates: tuple = ()
        if declared is not None and declared.resources is not None:
            resources = await self._query(endpoint, _RESOURCES)
            templates = await self._query(endpoint, _TEMPLATES)

        shadowed = self.synthetic_tool_names & {t.name for t in tools}
        if shadowed:
            logger.warning(f"Child tools {sorted(shadowed)} are shadowed by proxy tools and will not be listed")

        return CapabilitySnapshot(
            generation=endpoint.generation,
            tools=tools,
            prompts=prompts,
            resources=resources,
            resource_templates=templates,
        )

    async def refresh_tools(self, endpoint: ChildEndpoint) -> None:
        """Re-read the tool list after the child announced a change."""
        try:
            tools = await self._query(endpoint, _TOOLS)
        except CapabilityQueryFatal as e:
            logger.error(f"Failed to refresh child tools: {e}")
            return

        if self._snapshot.generation != endpoint.generation:
            logger.debug(f"Ignoring tool refresh from stale generation {endpoint.generation}")
            return
        self.replace(dataclasses.replace(self._snapshot, tools=tools))

    async def _query(self, endpoint: ChildEndpoint, listing: tuple) -> tuple:
        category = listing[0]
        try:
            return await self._list_all(endpoint, *listing[1:])
        except CapabilityQueryDegraded as e:
            logger.warning(f"{e} - continuing with an empty {category} list")
            return ()

    async def _list_all(
        self,
        endpoint: ChildEndpoint,
        method: str,
        request_type: type,
        result_type: type,
        result_field: str,
    ) -> tuple:
        items: list[Any] = []
        cursor: str | None = None
        seen: set[str] = set()

        for _ in range(MAX_PAGES):
            payload: dict[str, Any] = {"method": method}
            if cursor:
                payload["params"] = {"cursor": cursor}
            request = types.ClientRequest(request_type.model_validate(payload))

            try:
                result = await endpoint.request(request, result_type)
            except ChildUnavailable as e:
                raise CapabilityQueryFatal(f"Child went away while listing {method}: {e}") from e
            except McpError as e:
                if e.error.code == types.METHOD_NOT_FOUND:
                    raise CapabilityQueryDegraded(method) from e
                raise CapabilityQueryFatal(f"{method} failed: {e.error.message}") from e
            except Exception as e:
                raise CapabilityQueryFatal(f"{method} failed: {e}") from e

            items.extend(getattr(result, result_field) or [])
            cursor = result.nextCursor
            if not cursor or cursor in seen:
                break
            seen.add(cursor)
        else:
            logger.warning(f"{method}: stopped after {MAX_PAGES} pages")

        return tuple(items)
