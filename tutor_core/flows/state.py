"""State definition for the per-query LangGraph pipeline."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, TypedDict


class QueryState(TypedDict, total=False):
    """State shared across pipeline nodes; each node returns only the keys it changes."""

    query_id: str
    query: str
    tool_args: Dict[str, Any]
    tool_name: str
    success: bool
    error: Optional[str]
    error_code: Optional[str]
    raw_result: Any
    response: str
    metadata: Dict[str, Any]
    voice_pending: bool
    reconcile_trigger: Optional[str]
    related_tools: List[str]
