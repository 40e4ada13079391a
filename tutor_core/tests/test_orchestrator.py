import asyncio

import pytest

from tutor_core.agents.orchestrator import (
    BUSY_RESPONSE,
    NOT_READY_RESPONSE,
    Orchestrator,
    OrchestratorConfig,
    SystemState,
)
from tutor_core.domain.exceptions import ConfigurationError
from tutor_core.domain.models import LLMResponse, TextChunk
from tutor_core.flows.graph import TIMEOUT_RESPONSE
from tutor_core.infrastructure.events.bus import EventBus, EventType
from tutor_core.infrastructure.storage.json_store import MemoryKeyValueStore
from tutor_core.language.interface import LanguageInterface
from tutor_core.language.reconciler import ReconcilePolicy
from tutor_core.memory.system import MemorySystem
from tutor_core.tools import default_tools
from tutor_core.tools.base import common_params
from tutor_core.tools.definitions import ToolResult
from tutor_core.tools.executor import ToolExecutor


FAST = ReconcilePolicy(timeout=1.0, silence_window=0.05, settle_delay=0.01)


class ScriptedProvider:
    """complete() 依次返回 answers（路由分类等），stream() 输出固定分片。"""

    def __init__(self, answers, chunks=None, configured=True):
        self.name = "openai"
        self.supports_images = False
        self._configured = configured
        self.answers = list(answers)
        self.chunks = chunks or [TextChunk("A neural network is a layered model.", completed=True)]

    def is_configured(self):
        return self._configured

    async def open_session(self):
        pass

    async def close(self):
        pass

    async def set_audio_streaming(self, enabled):
        pass

    async def complete(self, messages, options=None):
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        return LLMResponse(content=answer, provider=self.name)

    async def stream(self, messages, options=None):
        for chunk in self.chunks:
            await asyncio.sleep(0.005)
            yield chunk


class GatedTool:
    def __init__(self, name="slow_tool", result=None, gate=None, delay=0.0):
        self.name = name
        self.description = "slow"
        self.params = common_params()
        self.use_when = ["tests"]
        self.capabilities = ["waiting"]
        self.gate = gate
        self.delay = delay
        self.result = result or ToolResult.ok({"message": "slow answer"})

    async def execute(self, args):
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


class Recorder:
    def __init__(self, bus):
        self.events = []
        for event_type in EventType:
            bus.subscribe(event_type, self.events.append)

    def of(self, event_type):
        return [e for e in self.events if e.type == event_type]


def _build(
    provider,
    tools=None,
    voice=False,
    executor_timeout=1.0,
    offline_fallback=True,
    store=None,
    voice_policy=FAST,
    voice_timeout=1.0,
):
    language = LanguageInterface(
        {"openai": provider},
        default_provider="openai",
        voice_output=voice,
        offline_fallback=offline_fallback,
        text_policy=FAST,
        voice_policy=voice_policy,
        session_ready_timeout=0.5,
    )
    memory = MemorySystem(store if store is not None else MemoryKeyValueStore())
    bus = EventBus()
    orchestrator = Orchestrator(
        language,
        memory,
        executor=ToolExecutor(timeout=executor_timeout, events=bus),
        events=bus,
        config=OrchestratorConfig(voice_completion_timeout=voice_timeout),
        tools=tools if tools is not None else default_tools(language),
    )
    return orchestrator, Recorder(bus)


@pytest.mark.asyncio
async def test_general_question_persists_one_turn_pair():
    orchestrator, recorder = _build(ScriptedProvider(["general_conversation"]))
    await orchestrator.initialize()

    response = await orchestrator.process_query("What is a neural network?")

    assert response == "A neural network is a layered model."
    chat = orchestrator.memory.chat_history
    assert [(t.role, t.content) for t in chat] == [
        ("user", "What is a neural network?"),
        ("bot", "A neural network is a layered model."),
    ]
    assert chat[1].related_tools == ["general_conversation"]
    processed = recorder.of(EventType.QUERY_PROCESSED)
    assert len(processed) == 1
    assert processed[0].payload["tool"] == "general_conversation"
    assert len(recorder.of(EventType.QUERY_RECEIVED)) == 1
    assert orchestrator.state == SystemState.IDLE


@pytest.mark.asyncio
async def test_diagram_request_returns_tool_message():
    orchestrator, recorder = _build(ScriptedProvider(["diagram_tool", "no json at all"]))
    await orchestrator.initialize()

    response = await orchestrator.process_query("draw me a diagram of photosynthesis")

    assert response.startswith("I've created a diagram of photosynthesis with")
    assert recorder.of(EventType.QUERY_PROCESSED)[0].payload["tool"] == "diagram_tool"


@pytest.mark.asyncio
async def test_second_query_while_processing_is_rejected():
    gate = asyncio.Event()
    tool = GatedTool(gate=gate)
    orchestrator, recorder = _build(ScriptedProvider(["slow_tool"]), tools=[tool])
    await orchestrator.initialize()

    first = asyncio.ensure_future(orchestrator.process_query("first"))
    while not orchestrator.is_processing:
        await asyncio.sleep(0)
    second = await orchestrator.process_query("second")
    gate.set()

    assert second == BUSY_RESPONSE
    assert await first == "slow answer"
    assert orchestrator.is_processing is False
    assert len(recorder.of(EventType.QUERY_RECEIVED)) == 1
    assert await orchestrator.process_query("third") == "slow answer"


@pytest.mark.asyncio
async def test_rejects_queries_before_initialize_or_when_disabled():
    orchestrator, recorder = _build(ScriptedProvider(["general_conversation"]))

    assert await orchestrator.process_query("hi") == NOT_READY_RESPONSE

    await orchestrator.initialize()
    orchestrator.set_enabled(False)
    assert await orchestrator.process_query("hi") == NOT_READY_RESPONSE
    assert recorder.of(EventType.QUERY_RECEIVED) == []


@pytest.mark.asyncio
async def test_initialize_without_provider_or_fallback_is_fatal():
    orchestrator, _ = _build(ScriptedProvider(["x"], configured=False), offline_fallback=False)

    with pytest.raises(ConfigurationError):
        await orchestrator.initialize()


@pytest.mark.asyncio
async def test_initialize_without_provider_uses_offline_answers():
    orchestrator, _ = _build(ScriptedProvider(["x"], configured=False))
    await orchestrator.initialize()

    response = await orchestrator.process_query("Tell me about machine learning")

    assert "Machine learning" in response


@pytest.mark.asyncio
async def test_tool_failure_becomes_error_string():
    tool = GatedTool(result=ToolResult.failure("Camera offline"))
    orchestrator, _ = _build(ScriptedProvider(["slow_tool"]), tools=[tool])
    await orchestrator.initialize()

    assert await orchestrator.process_query("what do you see") == "Camera offline"
    assert orchestrator.memory.chat_history[-1].content == "Camera offline"


@pytest.mark.asyncio
async def test_tool_timeout_becomes_apology():
    tool = GatedTool(delay=0.3)
    orchestrator, _ = _build(ScriptedProvider(["slow_tool"]), tools=[tool], executor_timeout=0.05)
    await orchestrator.initialize()

    assert await orchestrator.process_query("slow please") == TIMEOUT_RESPONSE


@pytest.mark.asyncio
async def test_pipeline_exception_is_reported_and_releases_busy_flag(monkeypatch):
    orchestrator, recorder = _build(ScriptedProvider(["general_conversation"]))
    await orchestrator.initialize()

    def broken_append(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(orchestrator.memory, "append_turn", broken_append)
    response = await orchestrator.process_query("hi")

    assert response == "Query processing failed: disk full"
    assert orchestrator.is_processing is False
    assert orchestrator.state == SystemState.ERROR
    errors = recorder.of(EventType.SYSTEM_ERROR)
    assert len(errors) == 1 and errors[0].payload["error"] == "disk full"
    assert recorder.of(EventType.QUERY_PROCESSED) == []


@pytest.mark.asyncio
async def test_voice_response_is_persisted_after_reconciliation():
    provider = ScriptedProvider(
        ["general_conversation"],
        chunks=[TextChunk("Neural "), TextChunk("networks learn.", completed=True)],
    )
    orchestrator, recorder = _build(provider, voice=True)
    await orchestrator.initialize()

    response = await orchestrator.process_query("What is a neural network?")

    assert response == "Neural networks learn."
    assert orchestrator.memory.chat_history[-1].content == "Neural networks learn."
    voice = recorder.of(EventType.VOICE_COMPLETED)
    assert len(voice) == 1
    assert voice[0].payload["transcription"] == "Neural networks learn."
    assert voice[0].query_id == recorder.of(EventType.QUERY_PROCESSED)[0].query_id


@pytest.mark.asyncio
async def test_conversation_context_is_passed_to_tools():
    captured = []

    class CapturingTool(GatedTool):
        async def execute(self, args):
            captured.append(args)
            return await super().execute(args)

    orchestrator, _ = _build(ScriptedProvider(["slow_tool"]), tools=[CapturingTool()])
    await orchestrator.initialize()

    await orchestrator.process_query("first")
    await orchestrator.process_query("second")

    args = captured[1]
    assert args["context"] == [
        {"role": "user", "content": "first"},
        {"role": "bot", "content": "slow answer"},
    ]
    assert args["text_only"] is True
    assert args["query_id"].startswith("q-")
    assert args["query_id"] != captured[0]["query_id"]


@pytest.mark.asyncio
async def test_reset_status_and_test_mode_summary():
    orchestrator, recorder = _build(ScriptedProvider(["general_conversation"]))
    await orchestrator.initialize()
    await orchestrator.process_query("hello")

    status = orchestrator.status()
    assert status["initialized"] is True
    assert status["chat_turns"] == 2
    assert status["last_query"]["tool"] == "general_conversation"
    assert "intelligent_conversation" in status["tools"]["tools"]
    assert orchestrator.summary_context() is None

    orchestrator._config.test_mode = True
    assert orchestrator.summary_context()["title"] == "AI & Machine Learning Lecture Summary"

    await orchestrator.reset_system()
    assert orchestrator.memory.chat_history == []
    assert len(recorder.of(EventType.SYSTEM_RESET)) == 1

    await orchestrator.shutdown()
    assert await orchestrator.process_query("hi") == NOT_READY_RESPONSE


class PerCallStreamProvider(ScriptedProvider):
    """每次 stream() 调用按顺序取一份 (delay, chunk) 脚本。"""

    def __init__(self, answers, scripts):
        super().__init__(answers)
        self.scripts = list(scripts)
        self.request_ids = []

    async def stream(self, messages, options=None):
        self.request_ids.append(options.request_id if options else None)
        for delay, chunk in self.scripts.pop(0):
            await asyncio.sleep(delay)
            yield chunk


@pytest.mark.asyncio
async def test_late_chunks_of_previous_query_never_reach_the_next_one():
    provider = PerCallStreamProvider(
        ["general_conversation"],
        scripts=[
            [(0.0, TextChunk("First answer")), (0.25, TextChunk(" arriving too late."))],
            [(0.08, TextChunk("Second answer.", completed=True))],
        ],
    )
    slow_silence = ReconcilePolicy(timeout=5.0, silence_window=5.0, settle_delay=0.01)
    orchestrator, recorder = _build(provider, voice=True, voice_policy=slow_silence, voice_timeout=0.2)
    await orchestrator.initialize()

    first = await orchestrator.process_query("What is a neural network?")
    second = await orchestrator.process_query("How do they learn?")
    await asyncio.sleep(0.3)

    assert first == "First answer"
    assert second == "Second answer."
    assert provider.request_ids[0] != provider.request_ids[1]

    voice = recorder.of(EventType.VOICE_COMPLETED)
    assert [e.payload["transcription"] for e in voice] == ["First answer", "Second answer."]
    assert [e.payload["trigger"] for e in voice] == ["deadline", "completed"]
    assert [e.query_id for e in voice] == provider.request_ids
    bot_turns = [t.content for t in orchestrator.memory.chat_history if t.role == "bot"]
    assert bot_turns == ["First answer", "Second answer."]
