import asyncio

import pytest

from tutor_core.domain.exceptions import (
    NotFoundError,
    ProviderUnavailableError,
    TimeoutExceededError,
    ValidationError,
)
from tutor_core.domain.models import VOICE_PENDING_PLACEHOLDER, LLMOptions, LLMResponse, Message, TextChunk
from tutor_core.language.interface import LanguageInterface
from tutor_core.language.reconciler import ReconcilePolicy


class FakeProvider:
    def __init__(
        self,
        name,
        *,
        configured=True,
        supports_images=False,
        chunks=None,
        delays=None,
        answer="ok",
        stream_error=None,
        open_delay=0.0,
    ):
        self.name = name
        self.supports_images = supports_images
        self._configured = configured
        self.chunks = chunks if chunks is not None else [TextChunk("Hello there.", completed=True)]
        self.delays = delays or [0.0] * len(self.chunks)
        self.answer = answer
        self.stream_error = stream_error
        self.open_delay = open_delay
        self.open_calls = 0
        self.streamed = []
        self.completed = []
        self.options = []

    def is_configured(self):
        return self._configured

    async def open_session(self):
        self.open_calls += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)

    async def close(self):
        pass

    async def set_audio_streaming(self, enabled):
        self.audio = enabled

    async def complete(self, messages, options=None):
        self.completed.append(messages)
        self.options.append(options)
        return LLMResponse(content=f"  {self.answer}  ", provider=self.name)

    async def stream(self, messages, options=None):
        self.streamed.append(messages)
        if self.stream_error is not None:
            raise self.stream_error
        for delay, chunk in zip(self.delays, self.chunks):
            if delay:
                await asyncio.sleep(delay)
            yield chunk


FAST = ReconcilePolicy(timeout=1.0, silence_window=0.05, settle_delay=0.01)


def _language(providers, **kw):
    kw.setdefault("offline_fallback", True)
    kw.setdefault("voice_output", False)
    kw.setdefault("text_policy", FAST)
    kw.setdefault("voice_policy", FAST)
    kw.setdefault("session_ready_timeout", 0.5)
    return LanguageInterface({p.name: p for p in providers}, default_provider="openai", **kw)


def _ask(text):
    return [Message(role="user", content=text)]


@pytest.mark.asyncio
async def test_generate_response_reconciles_stream():
    openai = FakeProvider("openai", chunks=[TextChunk("Neural "), TextChunk("networks learn.", completed=True)])
    li = _language([openai, FakeProvider("gemini", supports_images=True)])

    resp = await li.generate_response(_ask("What is a neural network?"), LLMOptions(request_id="q-1"))

    assert resp.content == "Neural networks learn."
    assert resp.provider == "openai"
    assert resp.request_id == "q-1"
    assert not li.has_pending("q-1")


@pytest.mark.asyncio
async def test_unconfigured_default_falls_back_to_other_provider():
    gemini = FakeProvider("gemini", supports_images=True, chunks=[TextChunk("From gemini.", completed=True)])
    li = _language([FakeProvider("openai", configured=False), gemini])

    resp = await li.generate_response(_ask("hi"))

    assert resp.provider == "gemini"
    assert resp.content == "From gemini."


@pytest.mark.asyncio
async def test_offline_fallback_when_no_provider_configured():
    li = _language([FakeProvider("openai", configured=False), FakeProvider("gemini", configured=False)])

    resp = await li.generate_response(_ask("Tell me about neural network layers"))

    assert resp.is_fallback
    assert resp.provider == "offline"
    assert "Neural networks" in resp.content


@pytest.mark.asyncio
async def test_without_fallback_provider_errors_propagate():
    li = _language(
        [FakeProvider("openai", configured=False), FakeProvider("gemini", configured=False)],
        offline_fallback=False,
    )

    with pytest.raises(ProviderUnavailableError):
        await li.generate_response(_ask("hi"))


@pytest.mark.asyncio
async def test_stream_failure_before_any_chunk_uses_fallback():
    openai = FakeProvider("openai", stream_error=RuntimeError("socket closed"))
    li = _language([openai, FakeProvider("gemini", configured=False)])

    resp = await li.generate_response(_ask("explain gradients"))

    assert resp.is_fallback


def test_image_request_switches_to_image_capable_provider():
    openai = FakeProvider("openai")
    gemini = FakeProvider("gemini", supports_images=True)
    li = _language([openai, gemini])

    with_image = [Message(role="user", content="what do you see", image_data=b"\xff\xd8jpeg")]

    assert li.select_provider(with_image) is gemini
    assert li.select_provider(_ask("plain")) is openai
    assert li.default_provider == "openai"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_session_init():
    openai = FakeProvider("openai", open_delay=0.02)
    li = _language([openai])

    sessions = await asyncio.gather(*(li.ensure_session(openai) for _ in range(5)))

    assert openai.open_calls == 1
    assert all(s.initialized for s in sessions)
    assert li.session_info()["openai"]["initialized"] is True


@pytest.mark.asyncio
async def test_session_not_ready_times_out():
    openai = FakeProvider("openai", open_delay=0.5)
    li = _language([openai], session_ready_timeout=0.02)

    with pytest.raises(TimeoutExceededError):
        await li.ensure_session(openai)


@pytest.mark.asyncio
async def test_voice_mode_returns_placeholder_then_reconciles_by_request_id():
    openai = FakeProvider(
        "openai",
        chunks=[TextChunk("Neural "), TextChunk("networks learn.", completed=True)],
        delays=[0.01, 0.01],
    )
    li = _language([openai], voice_output=True)

    resp = await li.generate_response(_ask("What is a neural network?"), LLMOptions(request_id="q-voice"))

    assert resp.content == VOICE_PENDING_PLACEHOLDER
    assert resp.is_voice_pending
    assert li.has_pending("q-voice")

    reconciled = await li.await_reconciliation("q-voice", timeout=1.0)

    assert reconciled.text == "Neural networks learn."
    assert reconciled.request_id == "q-voice"
    assert not li.has_pending("q-voice")


@pytest.mark.asyncio
async def test_text_only_request_bypasses_voice_channel():
    li = _language([FakeProvider("openai")], voice_output=True)

    resp = await li.generate_response(_ask("hi"), LLMOptions(text_only=True))

    assert resp.content == "Hello there."


@pytest.mark.asyncio
async def test_reconciliation_deadline_keeps_accumulated_text():
    openai = FakeProvider(
        "openai",
        chunks=[TextChunk("Partial answer"), TextChunk(" never arrives")],
        delays=[0.0, 0.5],
    )
    slow = ReconcilePolicy(timeout=5.0, silence_window=5.0, settle_delay=0.01)
    li = _language([openai], voice_output=True, voice_policy=slow)

    await li.generate_response(_ask("hi"), LLMOptions(request_id="q-slow"))
    await asyncio.sleep(0.02)
    reconciled = await li.await_reconciliation("q-slow", timeout=0.05)

    assert reconciled.text == "Partial answer"
    assert reconciled.trigger == "deadline"


@pytest.mark.asyncio
async def test_await_unknown_request_raises():
    li = _language([FakeProvider("openai")])

    with pytest.raises(NotFoundError):
        await li.await_reconciliation("nope", timeout=0.01)


@pytest.mark.asyncio
async def test_text_response_strips_and_carries_tool_results():
    openai = FakeProvider("openai", answer="diagram_tool")
    li = _language([openai])

    await li.send_tool_result("call-1", {"nodes": 3})
    answer = await li.generate_text_response(_ask("draw it"))
    again = await li.generate_text_response(_ask("again"))

    assert answer == "diagram_tool"
    assert again == "diagram_tool"
    first_call = openai.completed[0]
    assert first_call[0].role == "system"
    assert first_call[0].content.startswith("TOOL RESULTS:")
    assert '"nodes": 3' in first_call[0].content
    assert openai.completed[1][0].role == "user"


@pytest.mark.asyncio
async def test_text_response_never_falls_back():
    li = _language([FakeProvider("openai", configured=False)])

    with pytest.raises(ProviderUnavailableError):
        await li.generate_text_response(_ask("route me"))


def test_set_default_provider_validates_name():
    li = _language([FakeProvider("openai"), FakeProvider("gemini", supports_images=True)])

    li.set_default_provider("Gemini")
    assert li.default_provider == "gemini"
    with pytest.raises(ValidationError):
        li.set_default_provider("claude")


@pytest.mark.asyncio
async def test_stream_audio_and_reset_session():
    openai = FakeProvider("openai")
    li = _language([openai])

    await li.stream_audio(True)
    assert li.session_info()["openai"]["audio_streaming"] is True
    assert openai.audio is True

    await li.reset_session()
    assert li.session_info()["openai"]["initialized"] is False
    assert await li.test_connection() is True


@pytest.mark.asyncio
async def test_text_response_leaves_caller_options_untouched():
    openai = FakeProvider("openai", answer="summary_tool")
    li = _language([openai], voice_output=True)
    options = LLMOptions(temperature=0.2, request_id="q-7")

    await li.generate_text_response(_ask("route me"), options)

    assert options.text_only is False
    sent = openai.options[0]
    assert sent.text_only is True
    assert sent.temperature == 0.2
    assert sent.request_id == "q-7"
