# llm.py
# LLM boundary. The kernel only knows the LLMClient protocol; OpenAIChatClient
# is the default implementation against any OpenAI-compatible endpoint
# (OpenRouter by default).

from typing import Protocol

from openai import AsyncOpenAI

from agent_kernel.models import AssistantTurn, ToolCall, ToolChoice, ToolDefinition

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class LLMClient(Protocol):
    async def complete(
        self,
        history: list[dict],
        available_tools: list[ToolDefinition],
        tool_choice: ToolChoice,
    ) -> AssistantTurn: ...


def to_openai_tool(definition: ToolDefinition) -> dict:
    return {
        "type": "function",
        "function": {
            "name": definition.name,
            "description": definition.description,
            "parameters": definition.input_schema,
        },
    }


class OpenAIChatClient:
    """
    Chat-completions client.

    With `native_tools=False` (the default) tools are described only through
    the catalog prompt and the model answers in the JSON protocol. With
    `native_tools=True` the filtered definitions are also sent as functions and
    structured tool calls are returned on the turn.

    Example:
        client = OpenAIChatClient(model="anthropic/claude-3.5-haiku", api_key=key)
        turn = await client.complete(history, tools, ToolChoice.AUTO)
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str = OPENROUTER_BASE_URL,
        native_tools: bool = False,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._native_tools = native_tools
        self._client = client or AsyncOpenAI(base_url=base_url, api_key=api_key)

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        history: list[dict],
        available_tools: list[ToolDefinition],
        tool_choice: ToolChoice,
    ) -> AssistantTurn:
        kwargs: dict = {"model": self._model, "messages": history}
        if self._native_tools and available_tools and tool_choice != ToolChoice.NONE:
            kwargs["tools"] = [to_openai_tool(d) for d in available_tools]
            kwargs["tool_choice"] = tool_choice.value

        response = await self._client.chat.completions.create(**kwargs)
        message = response.choices[0].message

        calls = [
            ToolCall(id=call.id, name=call.function.name, arguments=call.function.arguments or "{}")
            for call in (message.tool_calls or [])
        ]
        return AssistantTurn(content=(message.content or "").strip(), tool_calls=calls)
