"""具体工具共享的参数定义与辅助函数。"""

from typing import Any, Dict, List, Optional

from tutor_core.domain.models import LLMOptions, Message
from tutor_core.language.interface import LanguageInterface
from tutor_core.tools.definitions import ToolParam
from tutor_core.tools.text_limits import BOT_CARD_TEXT


def common_params() -> Dict[str, ToolParam]:
    return {
        "query": ToolParam(
            name="query",
            description="User query to answer",
            required=True,
            schema={"type": "string"},
        ),
        "context": ToolParam(
            name="context",
            description="Recent conversation turns, oldest first",
            required=False,
            schema={"type": "array"},
        ),
        "summary_context": ToolParam(
            name="summary_context",
            description="Lecture summary (title, content, key_points or sections)",
            required=False,
            schema={"type": "object"},
        ),
        "max_length": ToolParam(
            name="max_length",
            description="Maximum character length for the response",
            required=False,
            schema={"type": "number"},
        ),
        "educational_focus": ToolParam(
            name="educational_focus",
            description="Whether to keep an educational focus",
            required=False,
            schema={"type": "boolean"},
        ),
        "text_only": ToolParam(
            name="text_only",
            description="Never use the voice channel",
            required=False,
            schema={"type": "boolean"},
        ),
        "query_id": ToolParam(
            name="query_id",
            description="Correlation id of the query being answered",
            required=False,
            schema={"type": "string"},
        ),
    }


class BaseTool:
    """具体工具基类：保存 LanguageInterface 并提供参数解析辅助。"""

    name = ""
    description = ""
    use_when: List[str] = []
    capabilities: List[str] = []

    def __init__(self, language: LanguageInterface):
        self._language = language
        self.params = common_params()

    @staticmethod
    def max_length(args: Dict[str, Any]) -> int:
        value = args.get("max_length")
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return int(value)
        return BOT_CARD_TEXT

    @staticmethod
    def educational_line(args: Dict[str, Any]) -> str:
        if args.get("educational_focus", True) is False:
            return ""
        return "- Maintain an educational focus when appropriate\n"

    @staticmethod
    def history(args: Dict[str, Any], limit: int = 10) -> List[Message]:
        """把 context 参数中的对话轮次转换为 Message（bot 映射为 assistant）。"""

        messages: List[Message] = []
        for item in (args.get("context") or [])[-limit:]:
            if not isinstance(item, dict):
                continue
            content = item.get("content")
            if not content:
                continue
            role = item.get("role")
            if role in ("bot", "assistant"):
                messages.append(Message(role="assistant", content=str(content)))
            elif role == "user":
                messages.append(Message(role="user", content=str(content)))
        return messages

    @staticmethod
    def options(
        args: Dict[str, Any],
        temperature: float,
        max_tokens: Optional[int] = None,
        text_only: Optional[bool] = None,
    ) -> LLMOptions:
        return LLMOptions(
            temperature=temperature,
            max_tokens=max_tokens,
            text_only=bool(args.get("text_only")) if text_only is None else text_only,
            request_id=args.get("query_id"),
        )
