"""工具数据结构定义。

这些 dataclass 描述了“工具”的 schema，既用于：
- 在 ToolExecutor 中注册、校验与执行工具（ToolDescriptor / ToolParam / ToolResult）。
- 在 ToolRouter 的分类提示词中描述工具（description / use_when / capabilities）。

另外定义了工具回答的标签联合类型 ToolResponse（Text | Structured），
Orchestrator 只在边界处调用 normalize_response 做一次归一化。
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Union


ParamType = Literal["string", "number", "boolean", "array", "object"]

# 处理函数可以直接返回 ToolResult，也可以返回任意值（视为成功结果）
ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]

    @property
    def type(self) -> Optional[str]:
        return self.schema.get("type")

    @property
    def enum(self) -> Optional[List[Any]]:
        return self.schema.get("enum")


@dataclass
class ToolDescriptor:
    """一个已注册的工具：名称唯一，use_when 只用于路由提示词，从不作为代码执行。"""

    name: str
    description: str
    params: Dict[str, ToolParam]
    handler: ToolHandler
    use_when: List[str] = field(default_factory=list)
    capabilities: List[str] = field(default_factory=list)

    @property
    def required_params(self) -> List[str]:
        return [name for name, p in self.params.items() if p.required]

    def parameter_schema(self) -> Dict[str, Any]:
        """以 JSON Schema 形式导出参数定义。"""

        properties: Dict[str, Any] = {}
        for name, param in self.params.items():
            properties[name] = {**param.schema, "description": param.description}
        return {
            "type": "object",
            "properties": properties,
            "required": self.required_params,
        }

    @classmethod
    def from_tool(cls, tool: "Tool") -> "ToolDescriptor":
        return cls(
            name=tool.name,
            description=tool.description,
            params=dict(tool.params),
            handler=tool.execute,
            use_when=list(tool.use_when),
            capabilities=list(tool.capabilities),
        )


@dataclass
class ToolResult:
    """一次工具调用的结果。success=False 时 result 恒为 None。"""

    success: bool
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: float = 0.0
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.success:
            self.result = None

    @classmethod
    def ok(cls, result: Any, **meta: Any) -> "ToolResult":
        return cls(success=True, result=result, meta=meta)

    @classmethod
    def failure(cls, error: str, code: str = "TOOL_FAILED", **meta: Any) -> "ToolResult":
        return cls(success=False, error=error, error_code=code, meta=meta)


class Tool(Protocol):
    """具体工具（对话、摘要、空间、图表）需要满足的协议。"""

    name: str
    description: str
    params: Dict[str, ToolParam]
    use_when: List[str]
    capabilities: List[str]

    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        ...


@dataclass(frozen=True)
class TextResponse:
    text: str
    kind: Literal["text"] = "text"

    @property
    def message(self) -> str:
        return self.text


@dataclass(frozen=True)
class StructuredResponse:
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    kind: Literal["structured"] = "structured"


ToolResponse = Union[TextResponse, StructuredResponse]

UNEXPECTED_FORMAT = "Unexpected response format from tool"

# 不同工具把回答放在不同字段里，按此顺序探测
_MESSAGE_FIELDS = ("message", "response", "result")


def normalize_response(raw: Any) -> ToolResponse:
    """把工具返回的异构结果归一化为 ToolResponse。"""

    if isinstance(raw, (TextResponse, StructuredResponse)):
        return raw
    if isinstance(raw, str):
        return TextResponse(raw)
    if isinstance(raw, dict):
        for key in _MESSAGE_FIELDS:
            value = raw.get(key)
            if isinstance(value, str):
                metadata = {k: v for k, v in raw.items() if k != key}
                return StructuredResponse(message=value, metadata=metadata)
    return TextResponse(UNEXPECTED_FORMAT)
