import pytest

from tutor_core.domain.exceptions import ApiError
from tutor_core.tools.base import common_params
from tutor_core.tools.definitions import ToolResult
from tutor_core.tools.router import ROUTER_TOOL_NAME, ToolRouter


class ScriptedLanguage:
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error
        self.prompts = []

    async def generate_text_response(self, messages, options=None, provider=None):
        self.prompts.append(messages[-1].content)
        if self.error is not None:
            raise self.error
        return self.answer


class FakeTool:
    def __init__(self, name, description="does things"):
        self.name = name
        self.description = description
        self.params = common_params()
        self.use_when = [f"when {name} fits"]
        self.capabilities = [f"{name} capability"]
        self.calls = []

    async def execute(self, args):
        self.calls.append(args)
        return ToolResult.ok({"message": f"{self.name} answered"})


def _router(language):
    tools = [FakeTool("diagram_tool"), FakeTool("summary_tool"), FakeTool("general_conversation")]
    return ToolRouter(language, tools), {t.name: t for t in tools}


@pytest.mark.asyncio
async def test_unregistered_answer_routes_to_default_tool():
    router, tools = _router(ScriptedLanguage("nonsense_tool"))

    res = await router.route_query({"query": "What is a neural network?"})

    assert res.success
    assert res.result["message"] == "general_conversation answered"
    assert res.meta["routed_to"] == "general_conversation"
    assert len(tools["general_conversation"].calls) == 1


@pytest.mark.asyncio
async def test_answer_matching_is_case_insensitive_substring():
    router, tools = _router(ScriptedLanguage("Tool: Diagram_Tool."))

    res = await router.route_query({"query": "draw me a diagram of photosynthesis"})

    assert res.meta["routed_to"] == "diagram_tool"
    assert tools["diagram_tool"].calls[0]["query"] == "draw me a diagram of photosynthesis"


@pytest.mark.asyncio
async def test_classifier_exception_falls_back_to_default():
    for error in (RuntimeError("socket"), ApiError(code="API_ERROR", message="500")):
        router, _ = _router(ScriptedLanguage(error=error))
        res = await router.route_query({"query": "hello"})
        assert res.meta["routed_to"] == "general_conversation"


@pytest.mark.asyncio
async def test_missing_query_is_rejected_without_classification():
    language = ScriptedLanguage("diagram_tool")
    router, _ = _router(language)

    res = await router.route_query({"query": "   "})

    assert res.success is False
    assert res.error_code == "INVALID_ARGUMENTS"
    assert language.prompts == []


@pytest.mark.asyncio
async def test_routing_prompt_lists_tools_and_summary_context():
    language = ScriptedLanguage("summary_tool")
    router, _ = _router(language)
    summary = {"title": "Photosynthesis 101", "content": "Light reactions", "key_points": ["a", "b"]}

    await router.route_query({"query": "what was the lecture about?", "summary_context": summary})

    prompt = language.prompts[0]
    for name in ("diagram_tool", "summary_tool", "general_conversation"):
        assert f"**{name}**" in prompt
    assert "AVAILABLE CONTEXT" in prompt
    assert '"Photosynthesis 101"' in prompt
    assert "2 points" in prompt
    assert 'USER QUERY: "what was the lecture about?"' in prompt
    assert "Respond with ONLY the tool name" in prompt


def test_descriptor_registers_router_as_a_tool():
    router, _ = _router(ScriptedLanguage("x"))

    descriptor = router.descriptor()

    assert descriptor.name == ROUTER_TOOL_NAME
    assert descriptor.required_params == ["query"]
    assert router.indexed_tools() == ["diagram_tool", "summary_tool", "general_conversation"]
    assert router.tool_metadata("summary_tool").capabilities == ["summary_tool capability"]
