"""工具系统：注册与执行 (executor)、LLM 路由 (router) 以及四个具体工具。"""

from typing import Callable, Dict, List, Optional

from tutor_core.language.interface import LanguageInterface
from tutor_core.tools.definitions import Tool
from tutor_core.tools.diagram import DiagramTool
from tutor_core.tools.general import GeneralConversationTool
from tutor_core.tools.spatial import ImageSource, SpatialTool
from tutor_core.tools.summary import SummaryTool


def default_tools(
    language: LanguageInterface,
    image_source: Optional[ImageSource] = None,
    on_diagram: Optional[Callable[[Dict], None]] = None,
) -> List[Tool]:
    """按路由索引顺序创建内置工具，默认工具 general_conversation 排在最后。"""

    return [
        DiagramTool(language, on_diagram=on_diagram),
        SummaryTool(language),
        SpatialTool(language, image_source=image_source),
        GeneralConversationTool(language),
    ]
