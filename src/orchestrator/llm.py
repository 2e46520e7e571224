"""LLM Integration Layer using LlamaIndex.

Supports multiple LLM providers via LlamaIndex-compatible packages:
- OpenAI
- Azure OpenAI
- Scripted outcomes for tests and offline runs

Generators only turn a history and a capability catalog into an
``Outcome``. They never call tools themselves.
"""

import json
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional, Sequence, Union

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from shared.config import DEFAULT_SYSTEM_PROMPT, LLMSettings
from shared.errors import GenerationError
from shared.logging import get_logger
from shared.models import (
    AssistantMessage,
    CapabilityCall,
    CapabilityDescriptor,
    CapabilityRequest,
    FinalAnswer,
    Message,
    Outcome,
    ToolMessage,
)

logger = get_logger(__name__)


class ResponseGenerator(ABC):
    """
    Abstract base class for response generators.

    A generator outputs either a final answer or a request to invoke one or
    more capabilities. Failures are raised as ``GenerationError``.
    """

    @abstractmethod
    async def generate(
        self,
        history: Sequence[Message],
        capabilities: Sequence[CapabilityDescriptor]
    ) -> Outcome:
        """
        Produce the next outcome for a conversation.

        Args:
            history: Messages in chronological order
            capabilities: Capabilities the generator may request

        Returns:
            ``FinalAnswer`` or ``CapabilityRequest``

        Raises:
            GenerationError: If the upstream call fails or its output cannot be parsed
        """
        pass


def _field(obj: Any, name: str) -> Any:
    """Read a field from an SDK object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def parse_tool_calls(raw_calls: Sequence[Any]) -> list[CapabilityCall]:
    """
    Convert OpenAI-style tool calls into ``CapabilityCall`` objects.

    Raises:
        GenerationError: If a call has no name or its arguments are not a JSON object
    """
    calls = []
    for raw in raw_calls:
        function = _field(raw, "function")
        name = _field(function, "name") if function is not None else None
        if not name:
            raise GenerationError("Tool call without a function name")

        arguments = _field(function, "arguments")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                raise GenerationError(f"Invalid arguments for tool {name}: {e}") from e
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise GenerationError(f"Arguments for tool {name} are not an object")

        call_id = _field(raw, "id")
        if call_id:
            calls.append(CapabilityCall(id=call_id, name=name, arguments=arguments))
        else:
            calls.append(CapabilityCall(name=name, arguments=arguments))
    return calls


class LlamaIndexGenerator(ResponseGenerator):
    """Shared logic for generators backed by a LlamaIndex chat LLM."""

    def __init__(
        self,
        settings: LLMSettings,
        system_prompt: Optional[str] = None
    ) -> None:
        self.settings = settings
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self._llm = None

    @abstractmethod
    def _build_llm(self) -> Any:
        """Construct the LlamaIndex LLM."""
        pass

    def _get_llm(self) -> Any:
        """Lazy initialization of LlamaIndex LLM."""
        if self._llm is None:
            self._llm = self._build_llm()
        return self._llm

    def _convert_messages(self, history: Sequence[Message]) -> list:
        """Convert internal messages to LlamaIndex format."""
        from llama_index.core.llms import ChatMessage, MessageRole

        result = [ChatMessage(role=MessageRole.SYSTEM, content=self.system_prompt)]
        for msg in history:
            if isinstance(msg, AssistantMessage):
                additional_kwargs = {}
                if msg.calls:
                    additional_kwargs["tool_calls"] = [call.to_openai() for call in msg.calls]
                result.append(ChatMessage(
                    role=MessageRole.ASSISTANT,
                    content=msg.content,
                    additional_kwargs=additional_kwargs,
                ))
            elif isinstance(msg, ToolMessage):
                result.append(ChatMessage(
                    role=MessageRole.TOOL,
                    content=msg.content,
                    additional_kwargs={
                        "tool_call_id": msg.call_id,
                        "name": msg.capability_name,
                    },
                ))
            else:
                result.append(ChatMessage(role=MessageRole.USER, content=msg.content))

        return result

    async def _chat(self, chat_messages: list, tools: list[dict[str, Any]]) -> Any:
        llm = self._get_llm()
        kwargs: dict[str, Any] = {"tools": tools} if tools else {}

        response = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retries),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True
        ):
            with attempt:
                response = await llm.achat(chat_messages, **kwargs)
        return response

    async def generate(
        self,
        history: Sequence[Message],
        capabilities: Sequence[CapabilityDescriptor]
    ) -> Outcome:
        chat_messages = self._convert_messages(history)
        tools = [capability.to_openai_tool() for capability in capabilities]

        try:
            response = await self._chat(chat_messages, tools)
        except Exception as e:
            logger.error("LLM completion failed", error=str(e), model=self.settings.model)
            raise GenerationError(f"LLM request failed: {e}") from e

        message = getattr(response, "message", None)
        if message is None:
            raise GenerationError("LLM returned no message")

        content = message.content or ""
        raw_calls = (message.additional_kwargs or {}).get("tool_calls") or []

        if raw_calls:
            calls = parse_tool_calls(raw_calls)
            logger.debug("LLM requested tool calls", count=len(calls))
            return CapabilityRequest(calls=calls, text=content)

        return FinalAnswer(text=content)


class OpenAIGenerator(LlamaIndexGenerator):
    """OpenAI generator using LlamaIndex."""

    def _build_llm(self) -> Any:
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=self.settings.model,
            api_key=self.settings.api_key,
            api_base=self.settings.api_base,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


class AzureOpenAIGenerator(LlamaIndexGenerator):
    """Azure OpenAI generator using LlamaIndex."""

    def _build_llm(self) -> Any:
        from llama_index.llms.azure_openai import AzureOpenAI

        return AzureOpenAI(
            engine=self.settings.deployment_name or self.settings.model,
            model=self.settings.model,
            api_key=self.settings.api_key,
            azure_endpoint=self.settings.api_base,
            api_version=self.settings.api_version,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )


ScriptedStep = Union[FinalAnswer, CapabilityRequest, Exception]


class ScriptedGenerator(ResponseGenerator):
    """Generator that replays queued outcomes; for tests and offline runs."""

    def __init__(
        self,
        settings: Optional[LLMSettings] = None,
        system_prompt: Optional[str] = None
    ) -> None:
        self.settings = settings
        self.system_prompt = system_prompt
        self.call_history: list[dict[str, Any]] = []
        self._queue: deque[ScriptedStep] = deque()

    def queue(self, *steps: ScriptedStep) -> None:
        """Queue outcomes, or exceptions to raise, in the order they are returned."""
        self._queue.extend(steps)

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def generate(
        self,
        history: Sequence[Message],
        capabilities: Sequence[CapabilityDescriptor]
    ) -> Outcome:
        self.call_history.append({
            "history": list(history),
            "capabilities": list(capabilities),
        })

        if not self._queue:
            return FinalAnswer(text="This is a scripted response.")

        step = self._queue.popleft()
        if isinstance(step, GenerationError):
            raise step
        if isinstance(step, Exception):
            raise GenerationError(f"LLM request failed: {step}") from step
        return step


def create_response_generator(
    settings: LLMSettings,
    system_prompt: Optional[str] = None
) -> ResponseGenerator:
    """
    Factory function to create the configured response generator.

    Supports:
    - openai: OpenAI API
    - azure_openai: Azure OpenAI Service
    - scripted: Scripted outcomes, no API calls

    Raises:
        ValueError: If provider is not supported
    """
    generators = {
        "openai": OpenAIGenerator,
        "azure_openai": AzureOpenAIGenerator,
        "scripted": ScriptedGenerator,
    }

    generator_class = generators.get(settings.provider)
    if not generator_class:
        raise ValueError(
            f"Unsupported LLM provider: {settings.provider}. "
            f"Supported: {list(generators.keys())}"
        )

    logger.info("Creating response generator", provider=settings.provider, model=settings.model)
    return generator_class(settings, system_prompt=system_prompt)
