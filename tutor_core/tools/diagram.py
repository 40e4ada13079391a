"""图表生成工具。

图表显示在视觉通道上，因此生成过程只走纯文本接口（generate_text_response），
不会与语音输出抢占。模型返回层级节点 JSON，解析失败时使用确定性的兜底结构。
"""

import json
import math
import re
from typing import Any, Callable, Dict, List, Optional

from tutor_core.domain.exceptions import BusinessError
from tutor_core.domain.models import Message
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.language.interface import LanguageInterface
from tutor_core.prompts import load_prompt
from tutor_core.tools.base import BaseTool
from tutor_core.tools.definitions import ToolResult


DEFAULT_CONCEPTS = 7
GENERIC_BRANCHES = ["Definition", "Key components", "How it works", "Examples", "Applications"]

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)
_TOPIC_PREFIX = re.compile(
    r"^(please\s+)?(can you\s+)?(create|draw|make|show|build|generate|visualize|map)\s+(me\s+)?"
    r"(a|an|the)?\s*(diagram|chart|mind map|concept map|flowchart|map|visualization)?\s*(of|about|for|on)?\s*",
    re.IGNORECASE,
)


def optimal_node_count(concepts: int) -> int:
    """根据概念数量决定节点数：少量概念全部展示，概念越多压缩比例越高。"""

    if concepts <= 5:
        return max(3, concepts)
    if concepts <= 10:
        return concepts
    if concepts <= 20:
        return math.ceil(concepts * 0.8)
    return min(20, math.ceil(concepts * 0.6))


def extract_topic(query: str) -> str:
    topic = _TOPIC_PREFIX.sub("", query.strip()).strip(" ?.!")
    return topic or query.strip()


def source_concepts(summary: Optional[Any], context: Optional[List[Any]]) -> List[str]:
    """从摘要（要点/分节）或最近对话中收集候选概念。"""

    concepts: List[str] = []
    if isinstance(summary, dict):
        concepts.extend(str(p) for p in summary.get("key_points") or [])
        concepts.extend(
            str(s["title"]) for s in summary.get("sections") or [] if isinstance(s, dict) and s.get("title")
        )
    if not concepts and context:
        concepts.extend(
            str(item["content"]) for item in context[-6:] if isinstance(item, dict) and item.get("content")
        )
    return concepts


def parse_diagram(raw: str, node_count: int) -> Optional[Dict[str, Any]]:
    """解析模型返回的 JSON，结构不合法时返回 None。"""

    match = _JSON_BLOCK.search(raw or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    nodes = data.get("nodes") if isinstance(data, dict) else None
    if not isinstance(nodes, list) or not nodes:
        return None
    ids = set()
    cleaned: List[Dict[str, Any]] = []
    for node in nodes[:node_count]:
        if not isinstance(node, dict) or not node.get("id") or not node.get("label"):
            return None
        parent = node.get("parent")
        if parent is not None and parent not in ids:
            return None
        try:
            level = int(node.get("level") or 0)
        except (TypeError, ValueError):
            return None
        ids.add(node["id"])
        cleaned.append(
            {
                "id": str(node["id"]),
                "label": str(node["label"]),
                "level": level,
                "parent": parent,
            }
        )
    roots = [n for n in cleaned if n["parent"] is None]
    if len(roots) != 1:
        return None
    return {"title": str(data.get("title") or roots[0]["label"]), "nodes": cleaned}


def fallback_diagram(topic: str, concepts: List[str], node_count: int) -> Dict[str, Any]:
    title = topic[:60] or "Concept Map"
    branches = (concepts or GENERIC_BRANCHES)[: max(1, node_count - 1)]
    nodes = [{"id": "n1", "label": title, "level": 0, "parent": None}]
    for i, label in enumerate(branches, start=2):
        nodes.append({"id": f"n{i}", "label": label[:60], "level": 1, "parent": "n1"})
    return {"title": title, "nodes": nodes}


class DiagramTool(BaseTool):
    name = "diagram_tool"
    description = "Creates visual diagrams from conversation content and learning points"
    capabilities = [
        "Create mind maps and concept diagrams",
        "Visualize educational content structure",
        "Generate interactive learning diagrams",
        "Organize information into visual hierarchies",
    ]
    use_when = [
        "User explicitly requests a diagram, chart, or visualization",
        'User wants to "create", "draw", "visualize", or "map" concepts',
        'User asks to "show relationships" or "organize information visually"',
        "User requests mind maps, flowcharts, or concept maps",
    ]

    def __init__(
        self,
        language: LanguageInterface,
        on_diagram: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        super().__init__(language)
        self._on_diagram = on_diagram

    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        query = str(args.get("query") or "").strip()
        if not query:
            return ToolResult.failure("Query parameter is required and must be a string", "INVALID_ARGUMENTS")
        topic = extract_topic(query)
        concepts = source_concepts(args.get("summary_context"), args.get("context"))
        node_count = optimal_node_count(len(concepts) or DEFAULT_CONCEPTS)

        diagram = await self._generate(topic, concepts, node_count, args.get("query_id"))
        if diagram is None:
            diagram = fallback_diagram(topic, concepts, node_count)
            generated = False
        else:
            generated = True

        nodes = diagram["nodes"]
        if self._on_diagram is not None:
            self._on_diagram({"title": diagram["title"], "nodes": nodes, "query": query})
        return ToolResult.ok(
            {
                "message": f"I've created a diagram of {diagram['title']} with {len(nodes)} concepts.",
                "diagram_nodes": nodes,
                "diagram_type": "hierarchical",
                "node_count": len(nodes),
                "should_create_diagram": True,
                "generated": generated,
                "related_topics": [n["label"] for n in nodes[1:4]],
            }
        )

    async def _generate(
        self,
        topic: str,
        concepts: List[str],
        node_count: int,
        query_id: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        source = "\n".join(f"- {c}" for c in concepts) or "- (no lecture material, use general knowledge)"
        prompt = load_prompt("diagram", topic=topic, source=source, node_count=node_count)
        try:
            raw = await self._language.generate_text_response(
                [Message(role="user", content=prompt)],
                self.options({"query_id": query_id}, temperature=0.4, max_tokens=600, text_only=True),
            )
        except BusinessError as exc:
            logger.warning("Diagram generation failed", extra={"extra": {"error": exc.message, "query_id": query_id}})
            return None
        diagram = parse_diagram(raw, node_count)
        if diagram is None:
            logger.warning("Diagram response not parseable", extra={"extra": {"query_id": query_id}})
        return diagram
