"""LangGraph construction and node implementations for one query.

route -> normalize -> [reconcile] -> persist

reconcile only runs when the routed tool answered with the voice-pending placeholder;
the finalized transcription is fetched by query id, never through ambient "current query" state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from tutor_core.domain.exceptions import NotFoundError
from tutor_core.domain.models import VOICE_PENDING_PLACEHOLDER
from tutor_core.flows.state import QueryState
from tutor_core.infrastructure.events.bus import EventBus, EventType
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.language.interface import LanguageInterface
from tutor_core.memory.system import MemorySystem
from tutor_core.tools.definitions import normalize_response
from tutor_core.tools.executor import ToolExecutor
from tutor_core.tools.router import ROUTER_TOOL_NAME

DEFAULT_RESPONSE = "I'm having trouble processing that request."
TOOL_FAILED_RESPONSE = "Tool execution failed"
TIMEOUT_RESPONSE = "Sorry, that took longer than expected. Please try asking again."


@dataclass
class QueryPipeline:
    executor: ToolExecutor
    language: LanguageInterface
    memory: MemorySystem
    events: EventBus
    voice_timeout: float
    entry_tool: str = ROUTER_TOOL_NAME


async def route_node(state: QueryState, pipeline: QueryPipeline) -> Dict[str, Any]:
    logger.info("route_node.start", extra={"extra": {"query_id": state["query_id"]}})
    result = await pipeline.executor.execute(pipeline.entry_tool, state["tool_args"])
    tool_name = result.meta.get("routed_to", pipeline.entry_tool)
    logger.info(
        "route_node.end",
        extra={"extra": {"query_id": state["query_id"], "tool": tool_name, "success": result.success}},
    )
    return {
        "tool_name": tool_name,
        "success": result.success,
        "error": result.error,
        "error_code": result.error_code,
        "raw_result": result.result,
    }


async def normalize_node(state: QueryState, pipeline: QueryPipeline) -> Dict[str, Any]:
    if not state.get("success"):
        if state.get("error_code") == "TOOL_TIMEOUT":
            response = TIMEOUT_RESPONSE
        else:
            response = state.get("error") or TOOL_FAILED_RESPONSE
        return {"response": response, "metadata": {}, "voice_pending": False}

    normalized = normalize_response(state.get("raw_result"))
    metadata = getattr(normalized, "metadata", {})
    response = normalized.message or DEFAULT_RESPONSE
    return {
        "response": response,
        "metadata": metadata,
        "voice_pending": response == VOICE_PENDING_PLACEHOLDER,
    }


async def reconcile_node(state: QueryState, pipeline: QueryPipeline) -> Dict[str, Any]:
    query_id = state["query_id"]
    logger.info("reconcile_node.start", extra={"extra": {"query_id": query_id}})
    try:
        reconciled = await pipeline.language.await_reconciliation(query_id, pipeline.voice_timeout)
    except NotFoundError:
        logger.warning("reconcile_node.no_pending_response", extra={"extra": {"query_id": query_id}})
        return {"response": DEFAULT_RESPONSE, "voice_pending": False, "reconcile_trigger": None}
    await pipeline.events.publish(
        EventType.VOICE_COMPLETED,
        {"query": state["query"], "transcription": reconciled.text, "trigger": reconciled.trigger},
        query_id=query_id,
    )
    logger.info(
        "reconcile_node.end",
        extra={"extra": {"query_id": query_id, "trigger": reconciled.trigger, "chars": len(reconciled.text)}},
    )
    return {"response": reconciled.text, "voice_pending": False, "reconcile_trigger": reconciled.trigger}


async def persist_node(state: QueryState, pipeline: QueryPipeline) -> Dict[str, Any]:
    tools = [state["tool_name"]] if state.get("tool_name") else []
    pipeline.memory.append_turn(state["query"], state["response"], tools, {"query_id": state["query_id"]})
    pipeline.memory.save_to_storage()
    await pipeline.events.publish(
        EventType.QUERY_PROCESSED,
        {"query": state["query"], "response": state["response"], "tool": state.get("tool_name")},
        query_id=state["query_id"],
    )
    return {"related_tools": tools}


def reconcile_router(state: QueryState) -> str:
    return "reconcile" if state.get("voice_pending") else "persist"


def build_query_graph(pipeline: QueryPipeline) -> CompiledStateGraph:
    async def _route(state: QueryState) -> Dict[str, Any]:
        return await route_node(state, pipeline)

    async def _normalize(state: QueryState) -> Dict[str, Any]:
        return await normalize_node(state, pipeline)

    async def _reconcile(state: QueryState) -> Dict[str, Any]:
        return await reconcile_node(state, pipeline)

    async def _persist(state: QueryState) -> Dict[str, Any]:
        return await persist_node(state, pipeline)

    graph = StateGraph(QueryState)
    graph.add_node("route", _route)
    graph.add_node("normalize", _normalize)
    graph.add_node("reconcile", _reconcile)
    graph.add_node("persist", _persist)
    graph.set_entry_point("route")
    graph.add_edge("route", "normalize")
    graph.add_conditional_edges("normalize", reconcile_router, {"reconcile": "reconcile", "persist": "persist"})
    graph.add_edge("reconcile", "persist")
    graph.add_edge("persist", END)
    return graph.compile()
