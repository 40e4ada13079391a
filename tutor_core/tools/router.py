"""基于 LLM 分类的工具路由器。

路由器维护一个“工具名 → 描述/能力/适用场景”的索引，每次查询时把索引渲染进分类提示词，
交给 LanguageInterface.generate_text_response（永不发声）选出工具名，再分发到对应工具。
新增工具只需要注册自然语言描述，路由器内部没有任何针对具体工具的分支。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from tutor_core.domain.exceptions import BusinessError, RoutingAmbiguityError
from tutor_core.domain.models import Message
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.language.interface import LanguageInterface
from tutor_core.prompts import load_prompt
from tutor_core.tools.base import common_params
from tutor_core.tools.definitions import Tool, ToolDescriptor, ToolResult


DEFAULT_TOOL = "general_conversation"
ROUTER_TOOL_NAME = "intelligent_conversation"
ROUTER_DESCRIPTION = (
    "AI-powered intelligent router that analyzes queries and selects the most appropriate specialized "
    "tool for educational responses, diagram creation, summary analysis, or spatial awareness"
)


@dataclass
class RouteEntry:
    name: str
    description: str
    tool: Tool
    capabilities: List[str] = field(default_factory=list)
    use_when: List[str] = field(default_factory=list)

    def describe(self) -> str:
        return (
            f"**{self.name}**:\n"
            f"- Description: {self.description}\n"
            f"- Use when: {'; '.join(self.use_when)}\n"
            f"- Capabilities: {'; '.join(self.capabilities)}"
        )


class ToolRouter:
    def __init__(
        self,
        language: LanguageInterface,
        tools: Optional[Iterable[Tool]] = None,
        default_tool: str = DEFAULT_TOOL,
    ):
        self._language = language
        self._default_tool = default_tool
        self._index: Dict[str, RouteEntry] = {}
        for tool in tools or ():
            self.index_tool(tool)

    @property
    def default_tool(self) -> str:
        return self._default_tool

    def index_tool(self, tool: Tool) -> None:
        if tool.name in self._index:
            logger.warning("Tool already indexed, replacing", extra={"extra": {"tool": tool.name}})
        self._index[tool.name] = RouteEntry(
            name=tool.name,
            description=tool.description,
            tool=tool,
            capabilities=list(tool.capabilities),
            use_when=list(tool.use_when),
        )
        logger.info(
            "Indexed tool",
            extra={"extra": {"tool": tool.name, "capabilities": len(tool.capabilities)}},
        )

    def indexed_tools(self) -> List[str]:
        return list(self._index)

    def tool_metadata(self, name: str) -> Optional[RouteEntry]:
        return self._index.get(name)

    def descriptor(self) -> ToolDescriptor:
        """把路由器本身包装成可注册到 ToolExecutor 的工具。"""

        return ToolDescriptor(
            name=ROUTER_TOOL_NAME,
            description=ROUTER_DESCRIPTION,
            params=common_params(),
            handler=self.route_query,
            use_when=["Every user query"],
            capabilities=[f"Dispatch to {name}" for name in self._index],
        )

    def build_routing_prompt(self, query: str, summary_context: Optional[Dict[str, Any]] = None) -> str:
        tools = "\n\n".join(entry.describe() for entry in self._index.values())
        context = ""
        if isinstance(summary_context, dict) and summary_context.get("title"):
            key_points = summary_context.get("key_points") or []
            sections = summary_context.get("sections") or []
            context = (
                "\n\nAVAILABLE CONTEXT:\n"
                f'- Lecture Summary Available: "{summary_context["title"]}"\n'
                f"- Summary Content: {'Yes' if summary_context.get('content') or sections else 'No'}\n"
                f"- Key Points Available: {f'{len(key_points)} points' if key_points else 'No'}"
            )
        examples = ", ".join(f'"{name}"' for name in self._index)
        return load_prompt(
            "routing",
            tools=tools,
            context=context,
            query=query,
            default_tool=self._default_tool,
            examples=examples,
        )

    def resolve_tool_name(self, answer: str) -> str:
        """在分类结果中查找已索引的工具名（不区分大小写的子串匹配，取最先出现者）。"""

        lowered = (answer or "").strip().lower()
        matches = [(lowered.find(name.lower()), name) for name in self._index if name.lower() in lowered]
        if not matches:
            raise RoutingAmbiguityError(
                code="UNKNOWN_TOOL",
                message=f"Classifier answer {answer!r} matches no indexed tool",
            )
        return min(matches)[1]

    async def classify(self, query: str, summary_context: Optional[Dict[str, Any]] = None) -> str:
        """返回应处理该查询的工具名；分类失败或无法识别时返回默认工具。"""

        prompt = self.build_routing_prompt(query, summary_context)
        try:
            answer = await self._language.generate_text_response([Message(role="user", content=prompt)])
            return self.resolve_tool_name(answer)
        except RoutingAmbiguityError as exc:
            logger.info("Routing fell back to default tool", extra={"extra": {"reason": exc.message}})
        except BusinessError as exc:
            logger.log(
                logging.WARNING,
                "Routing decision failed",
                extra={"extra": {"error": exc.message, "code": exc.code}},
            )
        except Exception as exc:
            logger.log(
                logging.WARNING,
                "Routing decision failed",
                exc_info=True,
                extra={"extra": {"error": str(exc)}},
            )
        return self._default_tool

    async def route_query(self, args: Dict[str, Any]) -> ToolResult:
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            return ToolResult.failure("Query parameter is required and must be a string", "INVALID_ARGUMENTS")
        selected = await self.classify(query, args.get("summary_context"))
        entry = self._index.get(selected) or self._index.get(self._default_tool)
        if entry is None:
            return ToolResult.failure(f"Default tool '{self._default_tool}' is not indexed")
        logger.info(
            "Routed query",
            extra={"extra": {"tool": entry.name, "query_id": args.get("query_id"), "query": query[:50]}},
        )
        result = await entry.tool.execute(args)
        if not isinstance(result, ToolResult):
            result = ToolResult.ok(result)
        result.meta["routed_to"] = entry.name
        return result
