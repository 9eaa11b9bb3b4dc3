# filtering.py
# Per-run view of the registry, and the catalog prompt built from it.
#
# Rules, applied in order:
#   1. terminate is never offered; a run ends through the protocol's final
#      action, not a tool call.
#   2. retrieve_knowledge is offered only when the context enables it.
#   3. Namespaced tools must come from an enabled source. An empty enabled
#      list allows every source.
#   4. Local tools are always offered.

import json
import logging

from agent_kernel.models import ExecutionContext, ToolDefinition
from agent_kernel.namespace import ToolNamespace
from agent_kernel.registry import ToolRegistry

logger = logging.getLogger(__name__)

TERMINATE_TOOL = "terminate"
KNOWLEDGE_TOOL = "retrieve_knowledge"

PROTOCOL_INSTRUCTIONS = """\
REACT PROTOCOL
You must output exactly one JSON object with two fields:
1. "thought": your reasoning for this step (keep it under 200 words).
2. "action": exactly one of
   a) call a tool:    {"type": "tool", "name": "<tool name>", "args": {...}}
   b) final answer:   {"type": "final", "answer": "<your answer>"}
   c) no action:      {"type": "none"}

RULES
- Output only the JSON object. No prose before or after it.
- One action per turn.
- Tool results come back to you as an observation JSON object.
- When the task is complete, use action type "final".\
"""


class ToolFilter:
    def __init__(self, registry: ToolRegistry, namespace: ToolNamespace) -> None:
        self._registry = registry
        self._namespace = namespace

    def is_allowed(self, name: str, ctx: ExecutionContext) -> bool:
        if name == TERMINATE_TOOL:
            return False

        if name == KNOWLEDGE_TOOL:
            return ctx.knowledge_enabled

        source_id, _ = self._namespace.parse(name)
        if source_id is not None:
            if not ctx.enabled_source_ids:
                return True
            enabled = {self._namespace.normalize(s) for s in ctx.enabled_source_ids}
            return source_id in enabled

        return True

    def allowed_definitions(self, ctx: ExecutionContext) -> list[ToolDefinition]:
        definitions = self._registry.definitions()
        allowed = sorted(
            (d for d in definitions if self.is_allowed(d.name, ctx)),
            key=lambda d: d.name,
        )
        logger.debug(
            "Filtered tools: total=%d allowed=%d knowledge=%s sources=%s",
            len(definitions), len(allowed), ctx.knowledge_enabled, ctx.enabled_source_ids,
        )
        return allowed

    def build_catalog_prompt(self, ctx: ExecutionContext) -> str:
        return render_catalog(self.allowed_definitions(ctx))


def render_definitions(definitions: list[ToolDefinition]) -> str:
    catalog = [
        {"name": d.name, "description": d.description, "inputSchema": d.input_schema}
        for d in definitions
    ]
    return json.dumps(catalog, indent=2, ensure_ascii=False)

def render_catalog(definitions: list[ToolDefinition]) -> str:
    """Tool list as a JSON array, followed by the fixed protocol instructions."""
    lines = ["AVAILABLE TOOLS"]
    if not definitions:
        lines.append('No tools are available. Answer directly with action type "final".')
    else:
        lines.append("The tools you may call, as a JSON array:")
        lines.append("")
        lines.append(render_definitions(definitions))
    lines.append("")
    lines.append(PROTOCOL_INSTRUCTIONS)
    return "\n".join(lines)
