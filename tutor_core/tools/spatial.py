from typing import Any, Dict, Optional, Protocol

from tutor_core.domain.exceptions import BusinessError
from tutor_core.domain.models import Message
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.language.interface import LanguageInterface
from tutor_core.prompts import load_prompt
from tutor_core.tools.base import BaseTool
from tutor_core.tools.definitions import ToolResult
from tutor_core.tools.text_limits import truncate_at_word_boundary


NO_CAMERA_MESSAGE = "I can't access the camera right now, so I can't see your surroundings."


class ImageSource(Protocol):
    """摄像头等图像采集协作者，返回 JPEG 字节，无画面时返回 None。"""

    async def capture(self) -> Optional[bytes]:
        ...


class SpatialTool(BaseTool):
    name = "spatial_tool"
    description = "Answers questions about live lecture environment using camera input and spatial awareness"
    capabilities = [
        "Analyze current physical environment with camera",
        "Provide real-time spatial context",
        "Answer questions about what is currently happening",
        "Observe live presentations or current surroundings",
    ]
    use_when = [
        'User asks about current/live environment or "what do you see right now"',
        "User wants real-time analysis of physical space",
        'User asks about "current presentation" happening live (not summarized)',
        "User requests camera-based observation of immediate surroundings",
    ]

    def __init__(self, language: LanguageInterface, image_source: Optional[ImageSource] = None):
        super().__init__(language)
        self._image_source = image_source

    def set_image_source(self, image_source: Optional[ImageSource]) -> None:
        self._image_source = image_source

    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        query = str(args.get("query") or "").strip()
        if not query:
            return ToolResult.failure("Query parameter is required and must be a string", "INVALID_ARGUMENTS")
        image = await self._image_source.capture() if self._image_source is not None else None
        if not image:
            logger.info("Spatial query without camera image", extra={"extra": {"query_id": args.get("query_id")}})
            return ToolResult.ok({"message": NO_CAMERA_MESSAGE, "spatially_aware": False})

        max_length = self.max_length(args)
        messages = [
            Message(role="system", content=load_prompt("spatial", max_length=max_length)),
            Message(role="user", content=query, image_data=image),
        ]
        try:
            response = await self._language.generate_response(
                messages,
                self.options(args, temperature=0.6, max_tokens=max(16, max_length // 2)),
            )
        except BusinessError as exc:
            return ToolResult.failure(f"Spatial analysis failed: {exc.message}")

        message = response.content if response.is_voice_pending else truncate_at_word_boundary(response.content, max_length)
        return ToolResult.ok(
            {
                "message": message,
                "spatially_aware": True,
                "image_bytes": len(image),
                "voice_pending": response.is_voice_pending,
            }
        )
