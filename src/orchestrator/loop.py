"""Orchestration loop - the turn state machine.

A turn starts in ``GENERATING``. A final answer moves it to ``DONE``; a
capability request moves it to ``AWAITING_TOOLS``, where every pending call
is executed and answered by exactly one tool message, in request order,
before generation resumes.

Every message is appended to the store before the next step begins, and
every transition is checkpointed.
"""

import asyncio
from typing import Any, Optional, Sequence

from mcp_client.gateway import ToolGateway
from orchestrator.llm import ResponseGenerator
from persistence.base import ConversationStore
from shared.errors import GenerationError, IterationLimitError
from shared.logging import get_logger
from shared.models import (
    AssistantMessage,
    CallStatus,
    CapabilityCall,
    CapabilityCallResult,
    CapabilityDescriptor,
    CapabilityRequest,
    FinalAnswer,
    LoopState,
    Message,
    ToolExecutionRecord,
    ToolMessage,
    TurnResult,
    UserMessage,
)

logger = get_logger(__name__)


def trim_orphaned_tool_messages(history: Sequence[Message]) -> list[Message]:
    """
    Drop tool exchanges the generator API would reject.

    Leading tool messages whose assistant call fell outside the window go,
    and so does any assistant message whose calls were not all answered
    (an interrupted turn), together with its partial answers.
    """
    start = 0
    while start < len(history) and isinstance(history[start], ToolMessage):
        start += 1

    trimmed: list[Message] = []
    index = start
    while index < len(history):
        message = history[index]
        if not (isinstance(message, AssistantMessage) and message.calls):
            if not isinstance(message, ToolMessage):
                trimmed.append(message)
            index += 1
            continue

        end = index + 1
        while end < len(history) and isinstance(history[end], ToolMessage):
            end += 1
        answered = {tool.call_id for tool in history[index + 1:end]}
        if all(call.id in answered for call in message.calls):
            trimmed.extend(history[index:end])
        else:
            logger.warning(
                "Dropping unanswered capability calls from history",
                message_id=message.id,
                missing=[call.id for call in message.calls if call.id not in answered]
            )
        index = end

    return trimmed


class OrchestrationLoop:
    """
    Alternates generation and tool execution until the generator is done.

    Collaborators are passed in explicitly so tests can substitute them.
    """

    def __init__(
        self,
        generator: ResponseGenerator,
        gateway: ToolGateway,
        store: ConversationStore,
        max_iterations: Optional[int] = 25,
        parallel_tool_calls: bool = False,
        history_limit: int = 10
    ) -> None:
        """
        Initialize the loop.

        Args:
            generator: Produces final answers or capability requests
            gateway: Executes capability calls
            store: Persists every produced message and checkpoint
            max_iterations: Maximum generation steps per turn; None for no cap
            parallel_tool_calls: Execute the calls of one request concurrently
            history_limit: Recent messages loaded for a user turn
        """
        self.generator = generator
        self.gateway = gateway
        self.store = store
        self.max_iterations = max_iterations
        self.parallel_tool_calls = parallel_tool_calls
        self.history_limit = history_limit

    async def run_user_turn(
        self,
        conversation_id: str,
        text: str,
        capabilities: Sequence[CapabilityDescriptor]
    ) -> TurnResult:
        """
        Persist the user's input and run a turn over the recent window.

        The returned messages do not include the user message.
        """
        await self.store.append(conversation_id, UserMessage(content=text))

        history = await self.store.load_recent(conversation_id, self.history_limit)
        history = trim_orphaned_tool_messages(history)

        return await self.run_turn(conversation_id, history, capabilities)

    async def run_turn(
        self,
        conversation_id: str,
        history: Sequence[Message],
        capabilities: Sequence[CapabilityDescriptor]
    ) -> TurnResult:
        """
        Run one turn to completion.

        Args:
            conversation_id: Conversation the produced messages belong to
            history: Messages the generator sees before this turn
            capabilities: Catalog passed to the generator verbatim

        Returns:
            All messages produced during the turn, in order

        Raises:
            GenerationError: If the generator fails or its outcome is unusable
            IterationLimitError: If ``max_iterations`` generation steps did not finish the turn
            PersistenceError: If the store fails
        """
        log = logger.bind(conversation_id=conversation_id)

        produced: list[Message] = []
        pending: list[CapabilityCall] = []
        state = LoopState.GENERATING
        iterations = 0
        step = 0

        await self._checkpoint(conversation_id, state, iterations, step, pending)

        while state != LoopState.DONE:
            if state == LoopState.GENERATING:
                if self.max_iterations is not None and iterations >= self.max_iterations:
                    log.warning("Max iterations reached", iterations=iterations)
                    raise IterationLimitError(
                        f"Turn did not finish within {self.max_iterations} generation steps",
                        conversation_id=conversation_id,
                        iterations=iterations
                    )

                iterations += 1
                outcome = await self._generate(
                    conversation_id, [*history, *produced], capabilities
                )

                if isinstance(outcome, FinalAnswer):
                    message = AssistantMessage(content=outcome.text)
                    state = LoopState.DONE
                else:
                    message = AssistantMessage(content=outcome.text, calls=outcome.calls)
                    pending = list(outcome.calls)
                    state = LoopState.AWAITING_TOOLS
                    log.debug("Capability calls requested", count=len(pending), iteration=iterations)

                await self.store.append(conversation_id, message)
                produced.append(message)

            else:
                produced.extend(await self._run_calls(conversation_id, pending))
                pending = []
                state = LoopState.GENERATING

            step += 1
            await self._checkpoint(conversation_id, state, iterations, step, pending)

        log.info("Turn completed", iterations=iterations, messages=len(produced))
        return TurnResult(messages=produced, final_state=state, iterations=iterations)

    async def _generate(
        self,
        conversation_id: str,
        history: list[Message],
        capabilities: Sequence[CapabilityDescriptor]
    ) -> FinalAnswer | CapabilityRequest:
        try:
            outcome = await self.generator.generate(history, capabilities)
        except GenerationError as e:
            e.conversation_id = e.conversation_id or conversation_id
            raise
        except Exception as e:
            raise GenerationError(f"Generator failed: {e}", conversation_id=conversation_id) from e

        if isinstance(outcome, CapabilityRequest) and not outcome.calls:
            raise GenerationError("Capability request without calls", conversation_id=conversation_id)
        if not isinstance(outcome, (FinalAnswer, CapabilityRequest)):
            raise GenerationError(
                f"Unparseable generator outcome: {type(outcome).__name__}",
                conversation_id=conversation_id
            )
        return outcome

    async def _run_calls(
        self,
        conversation_id: str,
        calls: list[CapabilityCall]
    ) -> list[ToolMessage]:
        """Execute every pending call; one tool message per call, in request order."""
        messages: list[ToolMessage] = []

        if self.parallel_tool_calls:
            results = await asyncio.gather(*(self._execute(call) for call in calls))
            for call, result in zip(calls, results):
                messages.append(await self._record(conversation_id, call, result))
        else:
            for call in calls:
                result = await self._execute(call)
                messages.append(await self._record(conversation_id, call, result))

        return messages

    async def _execute(self, call: CapabilityCall) -> CapabilityCallResult:
        """Execute one call. Any failure becomes a result, never an exception."""
        try:
            return await self.gateway.call(call.name, call.arguments, call_id=call.id)
        except Exception as e:
            logger.error("Capability call raised", tool=call.name, call_id=call.id, error=str(e))
            return CapabilityCallResult(
                call_id=call.id,
                capability_name=call.name,
                status=CallStatus.ERROR,
                error=f"{type(e).__name__}: {e}"
            )

    async def _record(
        self,
        conversation_id: str,
        call: CapabilityCall,
        result: CapabilityCallResult
    ) -> ToolMessage:
        message = ToolMessage(
            content=result.to_content(),
            call_id=call.id,
            capability_name=call.name,
            is_error=not result.ok
        )
        await self.store.append(conversation_id, message)
        await self.store.record_tool_execution(
            conversation_id,
            ToolExecutionRecord.from_result(conversation_id, call, result)
        )
        return message

    async def _checkpoint(
        self,
        conversation_id: str,
        state: LoopState,
        iteration: int,
        step: int,
        pending: list[CapabilityCall]
    ) -> None:
        snapshot: dict[str, Any] = {
            "state": state.value,
            "iteration": iteration,
            "pending_call_ids": [call.id for call in pending],
        }
        await self.store.checkpoint(conversation_id, snapshot, step)
