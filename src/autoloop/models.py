# models.py
# Data contracts for the autonomous agent loop.
# No business logic lives here: schema, validation and wire rendering only.

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolParameter(BaseModel):
    """One named argument of a tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = Field(default="string", description="JSON schema type.")
    description: str = ""
    required: bool = False


class ToolDescriptor(BaseModel):
    """A tool the model may call. Immutable for the duration of a run."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique within a run.")
    description: str = ""
    parameters: tuple[ToolParameter, ...] = ()

    @property
    def category(self) -> str:
        """Naming-convention category used to group the catalog for planning."""
        name = self.name.lower()
        if name.startswith("mcp_"):
            parts = name.split("_")
            if len(parts) >= 3:
                return f"MCP: {parts[1].capitalize()}"
            return "MCP: Unknown"
        if any(word in name for word in ("file", "read", "write")):
            return "File Operations"
        if any(word in name for word in ("terminal", "command", "shell")):
            return "Terminal/Commands"
        if any(word in name for word in ("web", "http", "api")):
            return "Web/API"
        if any(word in name for word in ("search", "find")):
            return "Search/Discovery"
        return "General"

    def to_openai(self) -> dict[str, Any]:
        properties = {
            p.name: {"type": p.type, "description": p.description} for p in self.parameters
        }
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


class ToolCallRequest(BaseModel):
    """A model-requested tool invocation. `id` is the deduplication key."""

    id: str
    name: str
    arguments: str | dict[str, Any] | None = Field(
        default="", description="Raw accumulated JSON text, or an already structured mapping."
    )

    def to_openai(self) -> dict[str, Any]:
        arguments = self.arguments
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments or ""},
        }


class ContentBlock(BaseModel):
    """A typed piece of tool output (MCP style)."""

    type: str = "text"
    text: str | None = None
    data: Any = None
    mime_type: str | None = None
    resource: Any = None


class ToolOutcome(BaseModel):
    """What a tool handler reports for a single execution."""

    success: bool = True
    result: Any = None
    error: str | None = None
    content: list[ContentBlock] | None = None


class Artifact(BaseModel):
    """Derived output attached to the final result (images, resources, structured data)."""

    id: str
    type: str = "json"
    title: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

Role = Literal["system", "user", "assistant", "tool"]


class ChatMessage(BaseModel):
    role: Role
    content: str = ""
    tool_calls: list[ToolCallRequest] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    images: list[str] | None = None
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Caller bookkeeping. Never sent to the model."
    )

    def to_openai(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.role}
        if self.images:
            parts: list[dict[str, Any]] = [{"type": "text", "text": self.content}]
            parts.extend({"type": "image_url", "image_url": {"url": url}} for url in self.images)
            message["content"] = parts
        else:
            message["content"] = self.content
        if self.tool_calls:
            message["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        if self.name is not None and self.role == "tool":
            message["name"] = self.name
        return message


class ChatOptions(BaseModel):
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    response_format: dict[str, Any] | None = None

    def as_kwargs(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ToolCallDelta(BaseModel):
    """One streamed fragment of a tool call."""

    id: str | None = None
    name: str | None = None
    arguments: str | None = None


class ChatChunk(BaseModel):
    """One incremental piece of a streamed model response."""

    content: str | None = None
    tool_calls: list[ToolCallDelta] = Field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    timings: dict[str, Any] | None = None


class ChatResponse(BaseModel):
    """A complete model response, blocking or aggregated from a stream."""

    message: ChatMessage
    finish_reason: str | None = None
    usage: dict[str, Any] = Field(default_factory=dict)
    timings: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Execution bookkeeping
# ---------------------------------------------------------------------------


class ToolCallResult(BaseModel):
    """Exactly one per dispatched request, whatever happened."""

    tool_name: str
    call_id: str
    success: bool
    result: Any = None
    error: str | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    reply: ChatMessage | None = Field(
        default=None, description="Ready-made tool-role message, set for content-block outcomes."
    )
    attempts: int = 0
    duplicate: bool = False

    def reply_text(self) -> str:
        if self.success and self.result is not None:
            return self.result if isinstance(self.result, str) else json.dumps(self.result, default=str)
        return self.error or f"Tool {self.tool_name} execution failed"


class ExecutionAttempt(BaseModel):
    attempt: int
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    success: bool = False
    error: str | None = None
    timestamp: datetime = Field(default_factory=_now)


class ExecutionStep(BaseModel):
    """One ledger entry. Tool results are deliberately not stored."""

    model_config = ConfigDict(frozen=True)

    step_number: int
    timestamp: datetime = Field(default_factory=_now)
    assistant_message: ChatMessage
    tool_calls: tuple[ToolCallRequest, ...] = ()
    progress_summary: str = ""
    verification_loop: int | None = None


class PlanResult(BaseModel):
    summary: str
    plan: str
    relevant_tools: list[str] = Field(default_factory=list)
    estimated_steps: int = 3


class AgentContext(BaseModel):
    """The single mutable run-scoped state. Owned by one Scaffold.run() call."""

    original_query: str
    attempts: list[ExecutionAttempt] = Field(default_factory=list)
    tools_available: list[str] = Field(default_factory=list)
    current_step: int = 0
    step_budget: int = 25
    tools_summary: str | None = None
    execution_plan: str | None = None
    estimated_steps: int | None = None
    progress_log: list[str] = Field(default_factory=list)
    resolved_ids: set[str] = Field(default_factory=set)
    results_by_id: dict[str, ToolCallResult] = Field(default_factory=dict)

    @property
    def remaining_steps(self) -> int:
        return max(self.step_budget - self.current_step, 0)

    def advance(self) -> int:
        """Consume one step of the budget and return the new step ordinal."""
        self.current_step += 1
        return self.current_step


# ---------------------------------------------------------------------------
# Completion verification
# ---------------------------------------------------------------------------

CompletionStatus = Literal["complete", "partial", "incomplete"]


class CompletedComponent(BaseModel):
    description: str = ""
    status: str = "completed"
    evidence: list[str] = Field(default_factory=list)
    confidence: int = 0


class MissingComponent(BaseModel):
    description: str = ""
    priority: str = "medium"
    required_tools: list[str] = Field(default_factory=list, alias="requiredTools")
    estimated_effort: int | None = Field(default=None, alias="estimatedEffort")
    blocked_by: list[str] = Field(default_factory=list, alias="blockedBy")

    model_config = ConfigDict(populate_by_name=True)


class NextAction(BaseModel):
    action: str = ""
    tools_needed: list[str] = Field(default_factory=list, alias="toolsNeeded")
    expected_output: str = Field(default="", alias="expectedOutput")
    dependencies: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class EvidenceSummary(BaseModel):
    files_created: list[str] = Field(default_factory=list, alias="filesCreated")
    data_retrieved: list[str] = Field(default_factory=list, alias="dataRetrieved")
    operations_performed: list[str] = Field(default_factory=list, alias="operationsPerformed")
    verification_results: list[str] = Field(default_factory=list, alias="verificationResults")

    model_config = ConfigDict(populate_by_name=True)


class CompletionVerdict(BaseModel):
    """Produced fresh by each verification iteration; superseded, never mutated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    completion_status: CompletionStatus = Field(..., alias="completionStatus")
    confidence_score: int = Field(..., alias="confidenceScore")
    completed_components: list[CompletedComponent] = Field(
        default_factory=list, alias="completedComponents"
    )
    missing_components: list[MissingComponent] = Field(
        default_factory=list, alias="missingComponents"
    )
    next_actions: list[NextAction] = Field(default_factory=list, alias="nextActions")
    evidence_summary: EvidenceSummary = Field(
        default_factory=EvidenceSummary, alias="evidenceSummary"
    )

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> int:
        try:
            score = int(round(float(value)))
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValueError(f"confidenceScore must be a number, got {value!r}") from exc
        return min(max(score, 0), 100)


# ---------------------------------------------------------------------------
# Run outcome
# ---------------------------------------------------------------------------


class LoopState(str, Enum):
    PLANNING = "planning"
    STEP = "step"
    DONE = "done"
    STOPPED = "stopped"
    MAX_STEPS = "max_steps"
    ERROR = "error"


class AgentResult(BaseModel):
    """The single message a run always produces."""

    run_id: str
    content: str
    state: LoopState
    stopped: bool = False
    usage: dict[str, Any] = Field(default_factory=dict)
    timings: dict[str, Any] = Field(default_factory=dict)
    tools_used: list[str] = Field(default_factory=list)
    steps: int = 0
    successful_tools: int = 0
    failed_tools: int = 0
    artifacts: list[Artifact] = Field(default_factory=list)
    verdict: CompletionVerdict | None = None
    verification_loops: int = 0
    processed_call_ids: list[str] = Field(default_factory=list)
    execution_plan: str | None = None
    error: str | None = None
