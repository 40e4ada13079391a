import re
from typing import Any, Dict, List

from tutor_core.domain.exceptions import BusinessError
from tutor_core.domain.models import Message
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.prompts import load_prompt
from tutor_core.tools.base import BaseTool
from tutor_core.tools.definitions import ToolResult
from tutor_core.tools.text_limits import truncate_at_word_boundary


FALLBACK_MESSAGE = "I'm here to help! What would you like to know or discuss?"

_TOPIC_WORDS = re.compile(r"\b(help|learn|understand|question|topic|discuss|explain|explore|study|know)\b")


def extract_topics(content: str) -> List[str]:
    found: List[str] = []
    for word in _TOPIC_WORDS.findall(content.lower()):
        if word not in found:
            found.append(word)
    return found[:3] or ["conversation", "assistance"]


def suggest_follow_ups(query: str) -> List[str]:
    lowered = query.lower()
    if any(w in lowered for w in ("hello", "hi", "hey")):
        return [
            "What topic would you like to explore?",
            "Is there something specific you'd like to learn about?",
        ]
    if any(w in lowered for w in ("what", "how", "why")):
        return [
            "Would you like me to explain that in more detail?",
            "Do you have related questions?",
        ]
    return [
        "What else would you like to know?",
        "Would you like to explore this topic further?",
    ]


class GeneralConversationTool(BaseTool):
    name = "general_conversation"
    description = "Handles general conversation and educational questions without specialized context"
    capabilities = [
        "Provide general educational assistance",
        "Answer broad knowledge questions",
        "Engage in conversational learning",
        "Handle queries not requiring specialized tools",
    ]
    use_when = [
        "General educational questions not related to specific lecture content",
        "Broad knowledge questions or concept explanations",
        "Conversational learning that doesn't need specialized context",
        "Default choice when no other tool is specifically needed",
    ]

    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        query = str(args.get("query") or "").strip()
        if not query:
            return ToolResult.failure("Query parameter is required and must be a string", "INVALID_ARGUMENTS")
        max_length = self.max_length(args)
        system_prompt = load_prompt(
            "general_conversation",
            max_length=max_length,
            educational_line=self.educational_line(args),
        )
        messages = [Message(role="system", content=system_prompt)] + self.history(args) + [
            Message(role="user", content=query)
        ]
        try:
            response = await self._language.generate_response(
                messages,
                self.options(args, temperature=0.8, max_tokens=max(16, max_length // 2)),
            )
        except BusinessError as exc:
            logger.warning("General conversation fell back", extra={"extra": {"error": exc.message}})
            return ToolResult.ok(self._result(FALLBACK_MESSAGE, query, voice_pending=False))

        if response.is_voice_pending:
            return ToolResult.ok(self._result(response.content, query, voice_pending=True))
        message = truncate_at_word_boundary(response.content, max_length) or FALLBACK_MESSAGE
        return ToolResult.ok(self._result(message, query, voice_pending=False))

    @staticmethod
    def _result(message: str, query: str, voice_pending: bool) -> Dict[str, Any]:
        return {
            "message": message,
            "related_topics": extract_topics(message),
            "suggested_follow_up": suggest_follow_ups(query),
            "educational_level": "intermediate",
            "voice_pending": voice_pending,
        }
