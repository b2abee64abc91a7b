"""Agent execution engine: round loop, streaming parser and retrieval pipeline."""

# Core types
from .types import (
    AbortSignal,
    AgentConfig,
    ChatOptions,
    ChatResponse,
    ChunkCallback,
    ExecutionResult,
    Message,
    OwnerInfo,
    PromptConfig,
    StreamChunk,
    StreamDelta,
    TimeFilter,
    TokenUsage,
    ToolCall,
    ToolContext,
    ToolResult,
    Transcript,
)
from .errors import AgentError, ToolDispatchError, TranscriptError, TransportError

# Parsing
from .stream_parser import ParserState, StreamingTagParser
from .tool_call_parser import extract_tool_calls, has_tool_call_markup, strip_thinking, strip_tool_call_blocks
from .usage import UsageAccumulator

# Collaborators
from .tools import (
    ConfigAccessor,
    DuplicateToolError,
    ModelClient,
    StaticConfigAccessor,
    ToolCallExecutor,
    ToolCatalog,
    ToolRegistry,
    ToolSpec,
)

# Retrieval and the agent
from .semantic_pipeline import SEMANTIC_SEARCH_TOOL, RetrievalPlan, SemanticRetrievalPipeline
from .agent import Agent, run_agent, run_agent_stream

__all__ = [
    # Types
    "AbortSignal",
    "AgentConfig",
    "ChatOptions",
    "ChatResponse",
    "ChunkCallback",
    "ExecutionResult",
    "Message",
    "OwnerInfo",
    "PromptConfig",
    "StreamChunk",
    "StreamDelta",
    "TimeFilter",
    "TokenUsage",
    "ToolCall",
    "ToolContext",
    "ToolResult",
    "Transcript",
    # Errors
    "AgentError",
    "ToolDispatchError",
    "TranscriptError",
    "TransportError",
    # Parsing
    "ParserState",
    "StreamingTagParser",
    "extract_tool_calls",
    "has_tool_call_markup",
    "strip_thinking",
    "strip_tool_call_blocks",
    "UsageAccumulator",
    # Collaborators
    "ConfigAccessor",
    "DuplicateToolError",
    "ModelClient",
    "StaticConfigAccessor",
    "ToolCallExecutor",
    "ToolCatalog",
    "ToolRegistry",
    "ToolSpec",
    # Retrieval and agent
    "SEMANTIC_SEARCH_TOOL",
    "RetrievalPlan",
    "SemanticRetrievalPipeline",
    "Agent",
    "run_agent",
    "run_agent_stream",
]
