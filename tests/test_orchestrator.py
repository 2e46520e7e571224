"""Tests for orchestrator components."""

import asyncio
import json
from types import SimpleNamespace

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.errors import GenerationError, IterationLimitError
from shared.models import (
    AssistantMessage,
    CallStatus,
    CapabilityCall,
    CapabilityCallResult,
    CapabilityDescriptor,
    CapabilityRequest,
    ExecutionStatus,
    FinalAnswer,
    LoopState,
    ToolMessage,
    UserMessage,
)


CAPABILITIES = [
    CapabilityDescriptor(
        name="list_files",
        provider_id="filesystem",
        description="List files in a directory",
        input_schema={"type": "object", "properties": {"path": {"type": "string"}}},
    )
]


def success(call_id: str, name: str, output) -> CapabilityCallResult:
    return CapabilityCallResult(
        call_id=call_id,
        capability_name=name,
        provider_id="filesystem",
        status=CallStatus.SUCCESS,
        output=output,
    )


def make_gateway(**kwargs) -> MagicMock:
    from mcp_client.gateway import ToolGateway

    gateway = MagicMock(spec=ToolGateway)
    gateway.call = AsyncMock(**kwargs)
    return gateway


async def make_loop(generator, gateway, **kwargs):
    from orchestrator.loop import OrchestrationLoop
    from persistence.memory import InMemoryConversationStore

    store = InMemoryConversationStore()
    conversation = await store.create_conversation("user1")
    loop = OrchestrationLoop(generator=generator, gateway=gateway, store=store, **kwargs)
    return loop, store, conversation.id


class TestOrchestrationLoop:
    """Tests for the turn state machine."""

    @pytest.mark.asyncio
    async def test_final_answer_single_message(self):
        """A final answer yields exactly one assistant message and DONE."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(FinalAnswer(text="Hello!"))
        gateway = make_gateway()
        loop, store, conversation_id = await make_loop(generator, gateway)

        result = await loop.run_turn(conversation_id, [UserMessage(content="hi")], CAPABILITIES)

        assert len(result.messages) == 1
        assert isinstance(result.messages[0], AssistantMessage)
        assert result.messages[0].content == "Hello!"
        assert result.messages[0].calls == []
        assert result.final_state == LoopState.DONE
        assert result.iterations == 1
        assert len(generator.call_history) == 1
        gateway.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self):
        """Tool request, tool result, then the generator sees the extended history."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(
            CapabilityRequest(calls=[
                CapabilityCall(id="call_1", name="list_files", arguments={"path": "."})
            ]),
            FinalAnswer(text="There are two files."),
        )
        gateway = make_gateway(return_value=success("call_1", "list_files", ["a.txt", "b.txt"]))
        loop, store, conversation_id = await make_loop(generator, gateway)

        history = [UserMessage(content="list files")]
        result = await loop.run_turn(conversation_id, history, CAPABILITIES)

        assistant, tool, final = result.messages
        assert assistant.calls[0].name == "list_files"
        assert assistant.calls[0].arguments == {"path": "."}
        assert isinstance(tool, ToolMessage)
        assert tool.call_id == "call_1"
        assert tool.capability_name == "list_files"
        assert not tool.is_error
        assert json.loads(tool.content) == ["a.txt", "b.txt"]
        assert final.content == "There are two files."

        gateway.call.assert_awaited_once_with("list_files", {"path": "."}, call_id="call_1")

        second_history = generator.call_history[1]["history"]
        assert [m.role for m in second_history] == ["user", "assistant", "tool"]
        assert second_history[2].call_id == "call_1"

    @pytest.mark.asyncio
    async def test_n_calls_produce_n_tool_messages_in_order(self):
        """One assistant message followed by one tool message per call, in request order."""
        from orchestrator.llm import ScriptedGenerator

        calls = [
            CapabilityCall(id=f"call_{i}", name="list_files", arguments={"path": str(i)})
            for i in range(3)
        ]
        generator = ScriptedGenerator()
        generator.queue(CapabilityRequest(calls=calls), FinalAnswer(text="done"))

        async def execute(name, arguments, call_id=None):
            return success(call_id, name, arguments["path"])

        gateway = make_gateway(side_effect=execute)
        loop, store, conversation_id = await make_loop(generator, gateway)

        result = await loop.run_turn(conversation_id, [UserMessage(content="go")], CAPABILITIES)

        first_generation = result.messages[:4]
        assert isinstance(first_generation[0], AssistantMessage)
        assert [m.call_id for m in first_generation[1:]] == ["call_0", "call_1", "call_2"]
        assert [m.content for m in first_generation[1:]] == ["0", "1", "2"]
        assert len(result.messages) == 5

    @pytest.mark.asyncio
    async def test_parallel_calls_keep_request_order(self):
        """Concurrent execution still collects every result in request order."""
        from orchestrator.llm import ScriptedGenerator

        calls = [
            CapabilityCall(id="slow", name="list_files", arguments={"delay": 0.05}),
            CapabilityCall(id="fast", name="list_files", arguments={"delay": 0}),
        ]
        generator = ScriptedGenerator()
        generator.queue(CapabilityRequest(calls=calls), FinalAnswer(text="done"))

        completed = []

        async def execute(name, arguments, call_id=None):
            await asyncio.sleep(arguments["delay"])
            completed.append(call_id)
            return success(call_id, name, call_id)

        gateway = make_gateway(side_effect=execute)
        loop, store, conversation_id = await make_loop(
            generator, gateway, parallel_tool_calls=True
        )

        result = await loop.run_turn(conversation_id, [UserMessage(content="go")], CAPABILITIES)

        assert completed == ["fast", "slow"]
        assert [m.call_id for m in result.messages[1:3]] == ["slow", "fast"]
        # The second generation only starts once both results are in
        assert len(generator.call_history[1]["history"]) == 4

    @pytest.mark.asyncio
    async def test_failed_tool_call_is_encoded_not_raised(self):
        """A failing call becomes an error tool message and the turn continues."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(
            CapabilityRequest(calls=[CapabilityCall(id="call_1", name="list_files")]),
            FinalAnswer(text="The tool failed."),
        )
        gateway = make_gateway(return_value=CapabilityCallResult(
            call_id="call_1",
            capability_name="list_files",
            status=CallStatus.ERROR,
            error="permission denied",
        ))
        loop, store, conversation_id = await make_loop(generator, gateway)

        result = await loop.run_turn(conversation_id, [UserMessage(content="go")], CAPABILITIES)

        tool = result.messages[1]
        assert tool.is_error
        payload = json.loads(tool.content)
        assert payload["status"] == "error"
        assert payload["error"] == "permission denied"
        assert result.final_state == LoopState.DONE

        executions = await store.list_tool_executions(conversation_id)
        assert len(executions) == 1
        assert executions[0].status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_gateway_exception_is_encoded_not_raised(self):
        """Even an exception from the gateway does not abort the turn."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(
            CapabilityRequest(calls=[CapabilityCall(id="call_1", name="list_files")]),
            FinalAnswer(text="ok"),
        )
        gateway = make_gateway(side_effect=RuntimeError("pipe closed"))
        loop, store, conversation_id = await make_loop(generator, gateway)

        result = await loop.run_turn(conversation_id, [UserMessage(content="go")], CAPABILITIES)

        tool = result.messages[1]
        assert tool.is_error
        assert "pipe closed" in json.loads(tool.content)["error"]
        assert result.messages[-1].content == "ok"

    @pytest.mark.asyncio
    async def test_generator_failure_aborts_turn(self):
        """Generator failures surface as GenerationError."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(RuntimeError("upstream 500"))
        loop, store, conversation_id = await make_loop(generator, make_gateway())

        with pytest.raises(GenerationError) as exc_info:
            await loop.run_turn(conversation_id, [UserMessage(content="hi")], CAPABILITIES)

        assert exc_info.value.conversation_id == conversation_id
        assert await store.load_all(conversation_id) == []

    @pytest.mark.asyncio
    async def test_generator_failure_keeps_persisted_prefix(self):
        """Steps completed before a generator failure stay persisted."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(
            CapabilityRequest(calls=[CapabilityCall(id="call_1", name="list_files")]),
            GenerationError("bad outcome"),
        )
        gateway = make_gateway(return_value=success("call_1", "list_files", []))
        loop, store, conversation_id = await make_loop(generator, gateway)

        with pytest.raises(GenerationError):
            await loop.run_turn(conversation_id, [UserMessage(content="go")], CAPABILITIES)

        stored = await store.load_all(conversation_id)
        assert [m.role for m in stored] == ["assistant", "tool"]

    @pytest.mark.asyncio
    async def test_unparseable_outcome_is_generation_error(self):
        """Anything other than the two outcome variants is turn-fatal."""
        generator = MagicMock()
        generator.generate = AsyncMock(return_value={"text": "not an outcome"})
        loop, store, conversation_id = await make_loop(generator, make_gateway())

        with pytest.raises(GenerationError, match="Unparseable"):
            await loop.run_turn(conversation_id, [UserMessage(content="hi")], CAPABILITIES)

    @pytest.mark.asyncio
    async def test_max_iterations(self):
        """A generator that never finishes is stopped by the iteration cap."""
        generator = MagicMock()
        generator.generate = AsyncMock(side_effect=lambda history, capabilities: CapabilityRequest(
            calls=[CapabilityCall(name="list_files")]
        ))
        gateway = make_gateway(side_effect=lambda name, arguments, call_id=None: success(call_id, name, []))
        loop, store, conversation_id = await make_loop(generator, gateway, max_iterations=3)

        with pytest.raises(IterationLimitError) as exc_info:
            await loop.run_turn(conversation_id, [UserMessage(content="loop")], CAPABILITIES)

        assert exc_info.value.iterations == 3
        assert generator.generate.await_count == 3
        assert gateway.call.await_count == 3
        assert len(await store.load_all(conversation_id)) == 6

    @pytest.mark.asyncio
    async def test_no_iteration_cap(self):
        """With the cap disabled the loop runs until the generator is done."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        for i in range(30):
            generator.queue(CapabilityRequest(calls=[CapabilityCall(id=f"c{i}", name="list_files")]))
        generator.queue(FinalAnswer(text="finally"))
        gateway = make_gateway(side_effect=lambda name, arguments, call_id=None: success(call_id, name, []))
        loop, store, conversation_id = await make_loop(generator, gateway, max_iterations=None)

        result = await loop.run_turn(conversation_id, [UserMessage(content="go")], CAPABILITIES)

        assert result.iterations == 31
        assert result.final_text == "finally"

    @pytest.mark.asyncio
    async def test_turn_messages_follow_history_in_store(self):
        """Reloading after a turn yields the pre-turn history then the turn, unreordered."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(
            CapabilityRequest(calls=[
                CapabilityCall(id="a", name="list_files"),
                CapabilityCall(id="b", name="list_files"),
            ]),
            FinalAnswer(text="done"),
        )
        gateway = make_gateway(side_effect=lambda name, arguments, call_id=None: success(call_id, name, call_id))
        loop, store, conversation_id = await make_loop(generator, gateway)

        before = [UserMessage(content="first"), AssistantMessage(content="reply"), UserMessage(content="second")]
        for message in before:
            await store.append(conversation_id, message)

        result = await loop.run_turn(conversation_id, before, CAPABILITIES)

        stored = await store.load_recent(conversation_id, 100)
        assert [m.id for m in stored] == [m.id for m in before] + [m.id for m in result.messages]

    @pytest.mark.asyncio
    async def test_checkpoints_follow_transitions(self):
        """Each transition is checkpointed with the loop state."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(
            CapabilityRequest(calls=[CapabilityCall(id="call_1", name="list_files")]),
            FinalAnswer(text="done"),
        )
        store_calls = []
        gateway = make_gateway(return_value=success("call_1", "list_files", []))
        loop, store, conversation_id = await make_loop(generator, gateway)

        real_checkpoint = store.checkpoint

        async def spy(conversation_id, state, step):
            store_calls.append((state["state"], step, state["pending_call_ids"]))
            await real_checkpoint(conversation_id, state, step)

        store.checkpoint = spy

        await loop.run_turn(conversation_id, [UserMessage(content="go")], CAPABILITIES)

        assert store_calls == [
            ("GENERATING", 0, []),
            ("AWAITING_TOOLS", 1, ["call_1"]),
            ("GENERATING", 2, []),
            ("DONE", 3, []),
        ]
        conversation = await store.get_conversation(conversation_id)
        assert conversation.state["state"] == "DONE"

    @pytest.mark.asyncio
    async def test_run_user_turn_uses_recent_window(self):
        """The user message is persisted and the window drops orphaned tool messages."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(FinalAnswer(text="sure"))
        loop, store, conversation_id = await make_loop(generator, make_gateway(), history_limit=3)

        for message in [
            UserMessage(content="list files"),
            AssistantMessage(calls=[CapabilityCall(id="call_1", name="list_files")]),
            ToolMessage(content="[]", call_id="call_1", capability_name="list_files"),
            AssistantMessage(content="No files."),
        ]:
            await store.append(conversation_id, message)

        result = await loop.run_user_turn(conversation_id, "thanks", CAPABILITIES)

        seen = generator.call_history[0]["history"]
        assert [m.role for m in seen] == ["assistant", "user"]
        assert seen[-1].content == "thanks"
        assert [m.content for m in result.messages] == ["sure"]

        stored = await store.load_all(conversation_id)
        assert [m.role for m in stored][-2:] == ["user", "assistant"]

    def test_trim_drops_unanswered_calls(self):
        """Assistant calls left without all their answers are removed with their partial answers."""
        from orchestrator.loop import trim_orphaned_tool_messages

        answered = AssistantMessage(calls=[CapabilityCall(id="ok", name="list_files")])
        interrupted = AssistantMessage(calls=[
            CapabilityCall(id="a", name="list_files"),
            CapabilityCall(id="b", name="list_files"),
        ])
        history = [
            ToolMessage(content="stale", call_id="old", capability_name="list_files"),
            UserMessage(content="first"),
            answered,
            ToolMessage(content="[]", call_id="ok", capability_name="list_files"),
            AssistantMessage(content="Nothing there."),
            UserMessage(content="second"),
            interrupted,
            ToolMessage(content="[]", call_id="a", capability_name="list_files"),
            UserMessage(content="third"),
        ]

        trimmed = trim_orphaned_tool_messages(history)

        assert [m.content for m in trimmed if isinstance(m, UserMessage)] == ["first", "second", "third"]
        assert answered in trimmed
        assert interrupted not in trimmed
        assert [m.call_id for m in trimmed if isinstance(m, ToolMessage)] == ["ok"]

    @pytest.mark.asyncio
    async def test_next_turn_recovers_after_interrupted_turn(self):
        """A turn cut off after requesting calls does not poison later turns."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        generator.queue(FinalAnswer(text="Back on track."))
        loop, store, conversation_id = await make_loop(generator, make_gateway())

        await store.append(conversation_id, UserMessage(content="list files"))
        await store.append(
            conversation_id,
            AssistantMessage(calls=[CapabilityCall(id="call_1", name="list_files")]),
        )

        result = await loop.run_user_turn(conversation_id, "try again", CAPABILITIES)

        seen = generator.call_history[0]["history"]
        assert [m.role for m in seen] == ["user", "user"]
        assert result.final_text == "Back on track."


class TestResponseGenerator:
    """Tests for response generators."""

    @pytest.mark.asyncio
    async def test_scripted_default_response(self):
        """The scripted generator answers when nothing is queued."""
        from orchestrator.llm import ScriptedGenerator

        generator = ScriptedGenerator()
        outcome = await generator.generate([UserMessage(content="Hello")], [])

        assert isinstance(outcome, FinalAnswer)
        assert outcome.text
        assert generator.call_history[0]["history"][0].content == "Hello"

    def test_create_generator_factory(self):
        """Test generator factory."""
        from orchestrator.llm import ScriptedGenerator, create_response_generator
        from shared.config import LLMSettings

        generator = create_response_generator(LLMSettings(provider="scripted"))

        assert isinstance(generator, ScriptedGenerator)

    def test_invalid_provider_raises(self):
        """Test that invalid provider raises error."""
        from orchestrator.llm import create_response_generator
        from shared.config import LLMSettings

        with pytest.raises(ValueError, match="Unsupported"):
            create_response_generator(LLMSettings(provider="invalid_provider"))

    def test_parse_tool_calls(self):
        """OpenAI tool calls become capability calls with decoded arguments."""
        from orchestrator.llm import parse_tool_calls

        calls = parse_tool_calls([
            {"id": "call_1", "type": "function",
             "function": {"name": "read_file", "arguments": '{"path": "a.txt"}'}},
            SimpleNamespace(id="call_2", function=SimpleNamespace(name="list_files", arguments="")),
        ])

        assert calls[0] == CapabilityCall(id="call_1", name="read_file", arguments={"path": "a.txt"})
        assert calls[1].id == "call_2"
        assert calls[1].arguments == {}

    def test_parse_tool_calls_rejects_bad_arguments(self):
        """Unparseable arguments are a generation error."""
        from orchestrator.llm import parse_tool_calls

        with pytest.raises(GenerationError, match="Invalid arguments"):
            parse_tool_calls([{"id": "c", "function": {"name": "x", "arguments": "{not json"}}])

        with pytest.raises(GenerationError, match="not an object"):
            parse_tool_calls([{"id": "c", "function": {"name": "x", "arguments": "[1, 2]"}}])

    @pytest.mark.asyncio
    async def test_llama_index_generator_tool_request(self):
        """A LlamaIndex response with tool calls becomes a capability request."""
        from orchestrator.llm import OpenAIGenerator
        from shared.config import LLMSettings

        generator = OpenAIGenerator(LLMSettings(provider="openai", max_retries=1))
        fake_llm = MagicMock()
        fake_llm.achat = AsyncMock(return_value=SimpleNamespace(message=SimpleNamespace(
            content="Let me look.",
            additional_kwargs={"tool_calls": [{
                "id": "call_9",
                "type": "function",
                "function": {"name": "list_files", "arguments": '{"path": "."}'},
            }]},
        )))
        generator._llm = fake_llm

        history = [
            UserMessage(content="list files"),
            AssistantMessage(calls=[CapabilityCall(id="call_0", name="list_files")]),
            ToolMessage(content="[]", call_id="call_0", capability_name="list_files"),
        ]
        outcome = await generator.generate(history, CAPABILITIES)

        assert isinstance(outcome, CapabilityRequest)
        assert outcome.calls[0].id == "call_9"
        assert outcome.text == "Let me look."

        chat_messages = fake_llm.achat.call_args.args[0]
        assert chat_messages[0].role.value == "system"
        assert chat_messages[2].additional_kwargs["tool_calls"][0]["id"] == "call_0"
        assert chat_messages[3].additional_kwargs["tool_call_id"] == "call_0"
        tools = fake_llm.achat.call_args.kwargs["tools"]
        assert tools[0]["function"]["name"] == "list_files"

    @pytest.mark.asyncio
    async def test_llama_index_generator_final_answer(self):
        """A plain response becomes a final answer."""
        from orchestrator.llm import OpenAIGenerator
        from shared.config import LLMSettings

        generator = OpenAIGenerator(LLMSettings(provider="openai", max_retries=1))
        generator._llm = MagicMock()
        generator._llm.achat = AsyncMock(return_value=SimpleNamespace(
            message=SimpleNamespace(content="Hello!", additional_kwargs={})
        ))

        outcome = await generator.generate([UserMessage(content="hi")], [])

        assert outcome == FinalAnswer(text="Hello!")
        assert "tools" not in generator._llm.achat.call_args.kwargs

    @pytest.mark.asyncio
    async def test_llama_index_generator_upstream_error(self):
        """Upstream failures are wrapped in GenerationError."""
        from orchestrator.llm import OpenAIGenerator
        from shared.config import LLMSettings

        generator = OpenAIGenerator(LLMSettings(provider="openai", max_retries=1))
        generator._llm = MagicMock()
        generator._llm.achat = AsyncMock(side_effect=ConnectionError("unreachable"))

        with pytest.raises(GenerationError, match="unreachable"):
            await generator.generate([UserMessage(content="hi")], [])
