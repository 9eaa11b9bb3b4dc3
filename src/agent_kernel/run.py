# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Settings come from the environment (.env supported), see config.py.
# Swap AGENT_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import asyncio

from agent_kernel import display
from agent_kernel.config import KernelSettings
from agent_kernel.execution import ToolExecutionService
from agent_kernel.filtering import ToolFilter
from agent_kernel.kernel import AgentKernel, RemoteToolAgent
from agent_kernel.llm import OpenAIChatClient
from agent_kernel.models import ExecutionContext
from agent_kernel.namespace import ToolNamespace
from agent_kernel.registry import ToolRegistry
from agent_kernel.remote import RemoteToolSourceManager
from agent_kernel.session import SessionService, create_engine, create_session_factory, init_models
from agent_kernel.tools import register_local_tools

# Test prompts, sent as one conversation.
PROMPTS = [
    # Direct answer, no tools needed
    "In one sentence, what is a ReAct agent?",

    # Single tool call, then a final answer
    "Use the echo tool to repeat the phrase 'kernel online', then tell me what it returned.",

    # Search → summarize → file_write chain inside the workspace
    "Search for the latest Python packaging best practices and save a short summary "
    "to notes/packaging_notes.txt.",

    # Path outside the workspace; file_write must refuse it
    "Save the text 'audit' to ../../etc/audit_report.txt.",
]


async def main_async() -> None:
    settings = KernelSettings.from_env()
    display.setup_logging()

    registry = ToolRegistry()
    namespace = ToolNamespace(settings.tool_separator, enabled=settings.namespace_enabled)
    register_local_tools(registry, settings.workspace)

    manager = RemoteToolSourceManager(registry, namespace, settings.remote_sources)
    await manager.initialize()
    await manager.synchronize_all()

    tool_filter = ToolFilter(registry, namespace)
    llm = OpenAIChatClient(
        model=settings.model,
        api_key=settings.api_key,
        base_url=settings.base_url,
        native_tools=settings.native_tools,
    )
    kernel = AgentKernel(llm, tool_filter, ToolExecutionService(registry), native_tools=settings.native_tools)
    agent = RemoteToolAgent(kernel, manager, refresh_every=settings.refresh_every_steps)

    engine = create_engine(settings.database_url)
    await init_models(engine)
    service = SessionService(create_session_factory(engine), agent, settings)

    display.banner(settings.model, settings.max_steps, manager.connected_source_ids())
    display.tool_catalog(tool_filter.allowed_definitions(ExecutionContext()))

    try:
        session = await service.create_session()
        for prompt in PROMPTS:
            display.prompt_received(prompt)
            reply = await service.send_message(session.conversation_id, prompt)
            display.run_result(reply.result)
    finally:
        await manager.close_all()
        await engine.dispose()


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
