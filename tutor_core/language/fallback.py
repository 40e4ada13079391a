"""离线兜底回答。

在没有任何可用 Provider 或调用失败时，根据用户最后一条消息的关键字
给出确定性的教育类回答。只作为最后手段，从不参与路由决策。
"""

from typing import List, Sequence, Tuple

from tutor_core.domain.models import ChatUsage, LLMResponse, Message


_KEYWORD_RESPONSES: Sequence[Tuple[Tuple[str, ...], str]] = (
    (
        ("machine learning", "ml"),
        "Machine learning is a subset of artificial intelligence that lets computers learn from data "
        "instead of being explicitly programmed. The main families are supervised learning (labeled "
        "examples), unsupervised learning (finding patterns in unlabeled data) and reinforcement "
        "learning (trial and error with rewards).",
    ),
    (
        ("neural network", "deep learning"),
        "Neural networks are computing systems inspired by the brain. They consist of layers of "
        "connected nodes that transform data step by step. Deep learning stacks many hidden layers "
        "to learn complex patterns, powering image recognition and language understanding.",
    ),
    (
        ("algorithm", "code"),
        "Algorithms are step-by-step procedures for solving problems. Good algorithms are correct, "
        "efficient and scale well. Common examples include sorting, searching and optimization "
        "algorithms.",
    ),
    (
        ("data", "analysis"),
        "Data analysis means examining, cleaning, transforming and modeling data to discover useful "
        "information. Typical steps are collection, preprocessing, exploration, modeling and "
        "interpretation.",
    ),
    (
        ("what", "explain"),
        "That's an excellent question! Understanding complex topics starts with breaking them down "
        "into fundamental concepts. Let's explore the key principles and how they apply in practice.",
    ),
    (
        ("how", "work"),
        "Great question about how things work! The process involves several connected steps. "
        "Understanding the underlying mechanism helps you apply it. Let's walk through the key parts.",
    ),
    (
        ("hello", "hi", "hey", "what's up"),
        "Hello! I'm your AI learning companion. Ask me about any subject you're studying, from "
        "computer science to mathematics. What would you like to learn about today?",
    ),
)

_DEFAULT_RESPONSE = (
    "Thank you for your question! This topic connects to many fundamental concepts. "
    "The key is to build your understanding step by step, linking new ideas to what you already know."
)


def offline_answer(query: str) -> str:
    lowered = (query or "").lower().strip()
    for keywords, answer in _KEYWORD_RESPONSES:
        if any(k in lowered for k in keywords):
            return answer
    return _DEFAULT_RESPONSE


def offline_response(messages: List[Message]) -> LLMResponse:
    """根据最后一条 user 消息生成兜底 LLMResponse，用量按字符数估算。"""

    user_messages = [m for m in messages if m.role == "user"]
    query = user_messages[-1].content if user_messages else "learning topic"
    content = offline_answer(query)
    prompt_chars = sum(len(m.content) for m in messages)
    return LLMResponse(
        content=content,
        provider="offline",
        finish_reason="fallback",
        usage=ChatUsage(
            prompt_tokens=prompt_chars,
            completion_tokens=len(content),
            total_tokens=prompt_chars + len(content),
        ),
    )
