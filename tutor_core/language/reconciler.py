"""流式文本收敛。

Provider 的流式输出会把“边想边说”的部分转写与结束信号交错发出，且顺序与到达都不可靠。
这里把一串 TextChunk 收敛成每个请求恰好一个最终文本：

1. 以整体超时启动累加器；
2. 每个分片：忽略连接/会话状态类文本，其余按需补空格后追加并重置静默计时；
3. 触发条件先到先得：静默超时（已有文本）、completed 标记后稳定等待结束（已有文本）、
   累计长度达到上限、整体超时；
4. 一旦收敛，其余计时器全部失效，之后的触发是空操作；从未累计到文本时返回通用兜底文本。

实现上是一个从有界 asyncio.Queue 读取分片的消费者，在“分片到达 / 最近的计时器到期”之间做选择等待。
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Tuple

from tutor_core.config.settings import settings
from tutor_core.domain.models import TextChunk


SYSTEM_STATUS_MARKERS: Tuple[str, ...] = (
    "Websocket connected",
    "Session initialized",
    "Connection opened",
)

# 与大小写无关的状态标记，按小写比较
SYSTEM_STATUS_MARKERS_ANY_CASE: Tuple[str, ...] = (
    "websocket",
    "session started",
)

EMPTY_RESPONSE_FALLBACK = "I'm here to help! Please feel free to ask me any questions about your studies."

# 流结束标记，由泵任务在 Provider 流耗尽（或出错）后放入通道
END_OF_STREAM = None


@dataclass
class ReconcilePolicy:
    """收敛参数，所有时间单位为秒。"""

    timeout: float = 10.0
    silence_window: float = 1.5
    settle_delay: float = 0.5
    max_chars: int = 280
    empty_text: str = EMPTY_RESPONSE_FALLBACK
    ignore_markers: Tuple[str, ...] = SYSTEM_STATUS_MARKERS
    ignore_markers_any_case: Tuple[str, ...] = SYSTEM_STATUS_MARKERS_ANY_CASE
    # True：分片是转写出的词/短语，缺少空白时补一个空格；False：分片是自带空白的 token 增量，原样拼接
    word_chunks: bool = True

    @classmethod
    def for_text(cls) -> "ReconcilePolicy":
        return cls(
            timeout=settings.response_timeout,
            silence_window=settings.silence_window,
            settle_delay=settings.completion_settle,
            max_chars=settings.max_response_chars,
            word_chunks=False,
        )

    @classmethod
    def for_voice(cls) -> "ReconcilePolicy":
        return cls(
            timeout=settings.voice_completion_timeout,
            silence_window=settings.voice_silence_window,
            settle_delay=settings.voice_completion_settle,
            max_chars=settings.max_response_chars,
        )


@dataclass(frozen=True)
class ReconciledText:
    request_id: str
    text: str
    trigger: str
    chunk_count: int


@dataclass
class StreamAccumulator:
    """单个进行中请求的累加状态，收敛后即不再变化。"""

    request_id: str
    buffer: str = ""
    last_chunk_time: Optional[float] = None
    silence_deadline: Optional[float] = None
    settle_deadline: Optional[float] = None
    chunk_count: int = 0
    ignored: int = 0
    trigger: Optional[str] = None
    final_text: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self.trigger is not None

    @property
    def has_text(self) -> bool:
        return bool(self.buffer.strip())

    def is_status_text(self, text: str, policy: ReconcilePolicy) -> bool:
        if any(marker in text for marker in policy.ignore_markers):
            return True
        lowered = text.lower()
        return any(marker in lowered for marker in policy.ignore_markers_any_case)

    def append(self, text: str, separate: bool = True) -> None:
        if not text:
            return
        if separate and self.buffer and not self.buffer[-1].isspace() and not text[0].isspace():
            self.buffer += " "
        self.buffer += text

    def observe(self, chunk: TextChunk, now: float, policy: ReconcilePolicy) -> None:
        """处理一个分片：过滤状态文本、追加并重置静默计时、记录 completed。

        completed 到达时若还没有文本，这次稳定等待直接作废，交给静默或整体超时决定。
        """

        if self.finalized:
            return
        if chunk.text and self.is_status_text(chunk.text, policy):
            self.ignored += 1
            return
        if chunk.text:
            self.append(chunk.text, separate=policy.word_chunks)
            self.chunk_count += 1
            self.last_chunk_time = now
            self.silence_deadline = now + policy.silence_window
        if chunk.completed and self.has_text and self.settle_deadline is None:
            self.settle_deadline = now + policy.settle_delay

    def finalize(self, trigger: str, empty_text: str = EMPTY_RESPONSE_FALLBACK) -> bool:
        """先到先得：已收敛时返回 False 且不做任何修改。"""

        if self.finalized:
            return False
        self.trigger = trigger
        self.final_text = self.buffer.strip() or empty_text
        self.silence_deadline = None
        self.settle_deadline = None
        return True

    def result(self) -> ReconciledText:
        return ReconciledText(
            request_id=self.request_id,
            text=self.final_text if self.final_text is not None else self.buffer.strip(),
            trigger=self.trigger or "pending",
            chunk_count=self.chunk_count,
        )


def _next_timer(acc: StreamAccumulator, overall_deadline: float) -> Tuple[str, float]:
    timers = [("timeout", overall_deadline)]
    if acc.has_text:
        if acc.settle_deadline is not None:
            timers.append(("completed", acc.settle_deadline))
        if acc.silence_deadline is not None:
            timers.append(("silence", acc.silence_deadline))
    return min(timers, key=lambda item: item[1])


async def reconcile(
    queue: "asyncio.Queue[Optional[TextChunk]]",
    accumulator: StreamAccumulator,
    policy: Optional[ReconcilePolicy] = None,
) -> ReconciledText:
    """消费分片通道直到收敛，返回唯一的最终文本。"""

    policy = policy or ReconcilePolicy()
    loop = asyncio.get_running_loop()
    overall_deadline = loop.time() + policy.timeout
    stream_open = True

    while not accumulator.finalized:
        now = loop.time()
        trigger, due = _next_timer(accumulator, overall_deadline)
        if due <= now:
            accumulator.finalize(trigger, policy.empty_text)
            break
        if not stream_open:
            await asyncio.sleep(due - now)
            continue
        try:
            item = await asyncio.wait_for(queue.get(), timeout=due - now)
        except asyncio.TimeoutError:
            continue
        if item is END_OF_STREAM:
            stream_open = False
            if not accumulator.has_text:
                accumulator.finalize("stream_closed", policy.empty_text)
            continue
        accumulator.observe(item, loop.time(), policy)
        if len(accumulator.buffer) >= policy.max_chars:
            accumulator.finalize("max_length", policy.empty_text)

    # 释放可能阻塞在 put 上的泵任务，收敛后的分片一律丢弃
    while not queue.empty():
        queue.get_nowait()
    return accumulator.result()
