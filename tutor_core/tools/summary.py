from typing import Any, Dict, List, Optional

from tutor_core.domain.exceptions import BusinessError
from tutor_core.domain.models import Message
from tutor_core.prompts import load_prompt
from tutor_core.tools.base import BaseTool
from tutor_core.tools.definitions import ToolResult
from tutor_core.tools.text_limits import limit_text


NO_SUMMARY = "[No summary content available]"


def format_summary(summary: Optional[Any]) -> str:
    """把摘要上下文渲染成注入系统提示词的文本，支持分节与“标题+正文+要点”两种结构。"""

    if not summary:
        return NO_SUMMARY
    if isinstance(summary, str):
        return summary
    lines: List[str] = []
    if summary.get("title"):
        lines.append(f"Title: {summary['title']}")
    sections = summary.get("sections") or []
    for i, section in enumerate(sections, start=1):
        if isinstance(section, dict) and section.get("title") and section.get("content"):
            lines.append(f"Section {i}: {section['title']}")
            lines.append(str(section["content"]))
    if summary.get("content"):
        lines.append(f"Content: {summary['content']}")
    key_points = summary.get("key_points") or []
    if key_points:
        lines.append("Key Points:")
        lines.extend(f"{i}. {point}" for i, point in enumerate(key_points, start=1))
    return "\n".join(lines) or NO_SUMMARY


def summary_topics(summary: Optional[Any]) -> List[str]:
    if not isinstance(summary, dict):
        return ["lecture review"]
    sections = [s.get("title") for s in summary.get("sections") or [] if isinstance(s, dict) and s.get("title")]
    if sections:
        return sections[:3]
    if summary.get("key_points"):
        return list(summary["key_points"][:3])
    if summary.get("title"):
        return [summary["title"]]
    return ["lecture review"]


class SummaryTool(BaseTool):
    name = "summary_tool"
    description = "Focuses on previous lecture summary content and answers specific questions about summarized material"
    capabilities = [
        "Answer questions about previously summarized lecture content",
        "Reference specific points from the lecture summary",
        "Explain concepts covered in the summarized material",
        "Provide details from the documented lecture content",
    ]
    use_when = [
        'User asks about "the lecture" content (refers to summarized material)',
        "User wants information from previous summary or lecture notes",
        "User asks about specific topics covered in the documented content",
        'User references "what we learned", "what was discussed", or "lecture material"',
        "User asks for lecture title, topics, or key points from summarized content",
    ]

    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        query = str(args.get("query") or "").strip()
        if not query:
            return ToolResult.failure("Query parameter is required and must be a string", "INVALID_ARGUMENTS")
        summary = args.get("summary_context")
        max_length = self.max_length(args)
        system_prompt = load_prompt(
            "summary",
            summary=format_summary(summary),
            max_length=max_length,
            educational_line=self.educational_line(args),
        )
        messages = [Message(role="system", content=system_prompt)] + self.history(args) + [
            Message(role="user", content=query)
        ]
        try:
            response = await self._language.generate_response(
                messages,
                self.options(args, temperature=0.7, max_tokens=max(16, max_length // 3)),
            )
        except BusinessError as exc:
            return ToolResult.failure(f"Summary tool failed: {exc.message}")

        message = response.content if response.is_voice_pending else limit_text(response.content, max_length)
        return ToolResult.ok(
            {
                "message": message,
                "related_topics": summary_topics(summary),
                "summary_focused": True,
                "tool_used": self.name,
                "voice_pending": response.is_voice_pending,
            }
        )
