"""
LLM helpers — prompt construction and streamed-response aggregation.
"""

from sightline.llm.context_builder import build_analysis_prompt, build_chat_messages
from sightline.llm.streaming import (
    SSEDecoder,
    StreamingAggregator,
    StreamResult,
    iter_sse_deltas,
)

__all__ = [
    "build_analysis_prompt",
    "build_chat_messages",
    "SSEDecoder",
    "StreamingAggregator",
    "StreamResult",
    "iter_sse_deltas",
]
