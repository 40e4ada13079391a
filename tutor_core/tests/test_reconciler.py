import asyncio

import pytest

from tutor_core.domain.models import TextChunk
from tutor_core.language.reconciler import (
    EMPTY_RESPONSE_FALLBACK,
    END_OF_STREAM,
    ReconcilePolicy,
    StreamAccumulator,
    reconcile,
)


def _policy(**overrides):
    values = dict(timeout=1.0, silence_window=0.05, settle_delay=0.01, max_chars=280)
    values.update(overrides)
    return ReconcilePolicy(**values)


async def _run(chunks, policy, close=False):
    queue = asyncio.Queue(maxsize=16)
    for chunk in chunks:
        queue.put_nowait(chunk)
    if close:
        queue.put_nowait(END_OF_STREAM)
    acc = StreamAccumulator(request_id="r-1")
    return await reconcile(queue, acc, policy), acc


@pytest.mark.asyncio
async def test_completed_marker_finalizes_concatenated_text_once():
    chunks = [TextChunk("Neural ", completed=False), TextChunk("networks learn.", completed=True)]
    result, acc = await _run(chunks, _policy(silence_window=1.5))

    assert result.text == "Neural networks learn."
    assert result.trigger == "completed"
    assert result.chunk_count == 2
    assert acc.finalize("silence") is False
    assert acc.trigger == "completed"


@pytest.mark.asyncio
async def test_silence_window_finalizes_without_completed_marker():
    result, _ = await _run([TextChunk("Still thinking")], _policy())

    assert result.text == "Still thinking"
    assert result.trigger == "silence"


@pytest.mark.asyncio
async def test_max_length_finalizes_immediately():
    result, _ = await _run([TextChunk("This is longer than ten characters")], _policy(max_chars=10, silence_window=5))

    assert result.trigger == "max_length"
    assert result.text.startswith("This is")


@pytest.mark.asyncio
async def test_status_markers_are_ignored():
    chunks = [TextChunk("Websocket connected"), TextChunk("Real answer.", completed=True)]
    result, acc = await _run(chunks, _policy())

    assert result.text == "Real answer."
    assert acc.ignored == 1


@pytest.mark.asyncio
async def test_closed_empty_stream_uses_generic_text():
    result, _ = await _run([], _policy(), close=True)

    assert result.text == EMPTY_RESPONSE_FALLBACK
    assert result.trigger == "stream_closed"


@pytest.mark.asyncio
async def test_overall_timeout_without_chunks():
    result, _ = await _run([], _policy(timeout=0.05))

    assert result.trigger == "timeout"
    assert result.text == EMPTY_RESPONSE_FALLBACK


@pytest.mark.asyncio
async def test_stream_end_with_text_waits_for_timer():
    result, _ = await _run([TextChunk("Done talking")], _policy(), close=True)

    assert result.text == "Done talking"
    assert result.trigger == "silence"


def test_observe_with_fixed_clock_resets_silence_deadline():
    policy = _policy(silence_window=1.5, settle_delay=0.5)
    acc = StreamAccumulator(request_id="r-2")

    acc.observe(TextChunk("Hello."), now=0.0, policy=policy)
    acc.observe(TextChunk("World", completed=True), now=1.0, policy=policy)

    assert acc.buffer == "Hello. World"
    assert acc.silence_deadline == 2.5
    assert acc.settle_deadline == 1.5


def test_first_trigger_wins():
    acc = StreamAccumulator(request_id="r-3")
    acc.append("partial")

    assert acc.finalize("deadline") is True
    acc.observe(TextChunk(" more"), now=0.0, policy=_policy())
    assert acc.finalize("completed") is False
    assert acc.result().text == "partial"
    assert acc.result().trigger == "deadline"


async def _run_timed(timed_chunks, policy):
    queue = asyncio.Queue(maxsize=16)
    acc = StreamAccumulator(request_id="r-4")

    async def produce():
        for delay, chunk in timed_chunks:
            await asyncio.sleep(delay)
            await queue.put(chunk)

    producer = asyncio.create_task(produce())
    result = await reconcile(queue, acc, policy)
    producer.cancel()
    return result, acc


@pytest.mark.asyncio
async def test_completed_before_any_text_does_not_cut_the_answer_short():
    timed = [
        (0.0, TextChunk("", completed=True)),
        (0.05, TextChunk("Neural")),
        (0.01, TextChunk(" networks learn.")),
    ]
    result, acc = await _run_timed(timed, _policy(silence_window=0.2, settle_delay=0.01))

    assert result.text == "Neural networks learn."
    assert result.trigger == "silence"
    assert result.chunk_count == 2


def test_empty_completed_marker_does_not_arm_settle_timer():
    policy = _policy(settle_delay=0.5)
    acc = StreamAccumulator(request_id="r-5")

    acc.observe(TextChunk("", completed=True), now=0.0, policy=policy)
    assert acc.settle_deadline is None

    acc.observe(TextChunk("Answer", completed=True), now=1.0, policy=policy)
    assert acc.settle_deadline == 1.5


@pytest.mark.asyncio
async def test_lowercase_markers_match_any_case():
    chunks = [TextChunk("WebSocket connected"), TextChunk("Session Started"), TextChunk("Hello there.")]
    result, acc = await _run(chunks, _policy())

    assert result.text == "Hello there."
    assert acc.ignored == 2


def test_exact_case_markers_stay_exact():
    acc = StreamAccumulator(request_id="r-6")
    policy = _policy()

    assert acc.is_status_text("Connection opened", policy) is True
    assert acc.is_status_text("connection opened for questions", policy) is False


@pytest.mark.asyncio
async def test_word_chunks_get_a_separating_space():
    result, _ = await _run([TextChunk("Neural"), TextChunk("networks learn.")], _policy())

    assert result.text == "Neural networks learn."


def test_word_chunks_keep_existing_whitespace():
    acc = StreamAccumulator(request_id="r-7")
    policy = _policy()

    acc.observe(TextChunk("Neural "), now=0.0, policy=policy)
    acc.observe(TextChunk("networks"), now=0.1, policy=policy)
    acc.observe(TextChunk(" learn."), now=0.2, policy=policy)

    assert acc.buffer == "Neural networks learn."


def test_token_deltas_are_joined_verbatim():
    acc = StreamAccumulator(request_id="r-8")
    policy = _policy(word_chunks=False)

    for i, delta in enumerate(["Back", "prop", "agation", " computes", " gradients."]):
        acc.observe(TextChunk(delta), now=float(i), policy=policy)

    assert acc.buffer == "Backpropagation computes gradients."
