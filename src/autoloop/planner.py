# planner.py
# One-shot planning call made before the agent loop starts.
#
# The plan is advisory: it is injected into the system prompt and nothing
# else. It never sizes the step budget and never aborts a run.

import logging
import re
from collections.abc import Sequence

from autoloop.models import ChatMessage, ChatOptions, PlanResult, ToolDescriptor
from autoloop.transport import ChatTransport

logger = logging.getLogger(__name__)

PLANNER_SYSTEM_PROMPT = (
    "You are a helpful AI assistant that analyzes tools and creates execution plans. "
    "Be concise and practical. Consider conversation history to avoid repetition "
    "and build upon previous work."
)

PLANNER_PROMPT = """\
You are an AI assistant tasked with analyzing available tools and creating an execution plan \
for a user query, taking into account the conversation history.

USER QUERY: "{query}"

CONVERSATION CONTEXT:
{context}

AVAILABLE TOOLS:
{tools}

Your task is to:
1. Create a CONCISE summary of the most relevant tools for this query
2. Create a STEP-BY-STEP execution plan that considers the conversation history
3. Identify which tools should be used in sequence
4. Estimate how many steps this will take

GUIDELINES:
- Focus ONLY on tools that are directly relevant to the user's query
- Don't repeat actions that already succeeded earlier in the conversation
- If previous tool calls failed, plan alternative approaches
- For commands and file operations, plan to act AND then check the result

Respond in this EXACT format:

TOOLS_SUMMARY:
[Concise summary of the most relevant tools available for this task]

EXECUTION_PLAN:
Step 1: [First action with specific tool]
Step 2: [Second action, often checking result of step 1]
[etc.]

RELEVANT_TOOLS:
[Comma-separated list of tool names that will likely be used]

ESTIMATED_STEPS:
[Number between 1-10]\
"""

DEFAULT_SUMMARY = "Tools available for completing your request."
DEFAULT_PLAN = "Step 1: Analyze request\nStep 2: Execute appropriate tools\nStep 3: Provide results"
DEFAULT_ESTIMATED_STEPS = 3
FALLBACK_TOOL_COUNT = 5

_SECTIONS = {
    "TOOLS_SUMMARY:": "summary",
    "EXECUTION_PLAN:": "plan",
    "RELEVANT_TOOLS:": "tools",
    "ESTIMATED_STEPS:": "steps",
}


# ---------------------------------------------------------------------------
# Catalog and history rendering
# ---------------------------------------------------------------------------


def group_tools_by_category(tools: Sequence[ToolDescriptor]) -> dict[str, list[ToolDescriptor]]:
    categories: dict[str, list[ToolDescriptor]] = {}
    for tool in tools:
        categories.setdefault(tool.category, []).append(tool)
    return categories


def describe_tools(tools: Sequence[ToolDescriptor]) -> str:
    lines: list[str] = []
    for category, members in group_tools_by_category(tools).items():
        lines.append(f"{category}:")
        for tool in members:
            lines.append(f"  • {tool.name}: {tool.description}")
            required = [p.name for p in tool.parameters if p.required]
            optional = [p.name for p in tool.parameters if not p.required]
            if required:
                lines.append(f"    Required: {', '.join(required)}")
            if optional and len(optional) <= 3:
                lines.append(f"    Optional: {', '.join(optional)}")
    return "\n".join(lines)


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def summarize_conversation(history: Sequence[ChatMessage], window: int = 10) -> str:
    """
    Plain-text digest of prior conversation for the planning prompt.

    Tool usage is read from `metadata["tools_used"]`; a message with
    `metadata["error"]` mentioning a tool marks that tool as failed.
    """
    if not history:
        return "No previous conversation history."

    user_queries: list[str] = []
    successful: list[str] = []
    failed: list[str] = []

    for message in history:
        if message.role == "user":
            user_queries.append(_preview(message.content, 150))
        for tool in message.metadata.get("tools_used") or []:
            if tool not in successful:
                successful.append(tool)
        if message.metadata.get("error") and "tool" in message.content:
            match = re.search(r"tool[:\s]+([a-zA-Z_]+)", message.content, re.IGNORECASE)
            if match and match.group(1) not in failed:
                failed.append(match.group(1))

    parts = [f"Conversation has {len(history)} total messages ({len(user_queries)} user queries)."]

    if user_queries:
        recent_queries = user_queries[-3:]
        first = len(user_queries) - len(recent_queries) + 1
        parts.append(f"\nUser intent progression ({len(user_queries)} queries):")
        parts.extend(f"{first + i}. {query}" for i, query in enumerate(recent_queries))

    if successful or failed:
        parts.append("\nTool usage history:")
        if successful:
            parts.append(f"✅ Successfully used: {', '.join(successful)}")
        if failed:
            parts.append(f"❌ Previously failed: {', '.join(failed)}")

    recent = list(history)[-window:] if window else []
    if recent:
        parts.append(f"\nRecent conversation context (last {len(recent)} messages):")
        for message in recent:
            speaker = "User" if message.role == "user" else "Assistant"
            parts.append(f"{speaker}: {_preview(message.content, 200)}")
            tools_used = message.metadata.get("tools_used")
            if tools_used:
                parts.append(f"  └─ Tools used: {', '.join(tools_used)}")
            if message.metadata.get("error"):
                parts.append("  └─ ⚠️ Error occurred")

    parts.append("\nPLANNING GUIDANCE:")
    if successful:
        parts.append(f"- Consider reusing successful tools: {', '.join(successful)}")
    if failed:
        parts.append(f"- Avoid or find alternatives to failed tools: {', '.join(failed)}")
    if len(user_queries) > 1:
        parts.append("- This is a multi-turn conversation - build upon previous context")

    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def parse_planning_response(content: str, tools: Sequence[ToolDescriptor] = ()) -> PlanResult:
    """Scan for the four section headers. Missing sections get defaults."""
    summary: list[str] = []
    plan: list[str] = []
    relevant: list[str] = []
    estimated = DEFAULT_ESTIMATED_STEPS
    section = ""

    for line in content.split("\n"):
        stripped = line.strip()
        header = next((h for h in _SECTIONS if stripped.startswith(h)), None)
        if header is not None:
            section = _SECTIONS[header]
            # Tolerate a value on the header line itself.
            stripped = stripped[len(header):].strip()
        if not stripped:
            continue

        if section == "summary":
            summary.append(stripped)
        elif section == "plan":
            plan.append(stripped)
        elif section == "tools":
            relevant = [name.strip() for name in stripped.split(",") if name.strip()]
        elif section == "steps":
            match = re.search(r"\d+", stripped)
            if match:
                estimated = min(max(int(match.group()), 1), 10)

    if not relevant:
        relevant = [tool.name for tool in tools[:FALLBACK_TOOL_COUNT]]

    return PlanResult(
        summary="\n".join(summary) or DEFAULT_SUMMARY,
        plan="\n".join(plan) or DEFAULT_PLAN,
        relevant_tools=relevant,
        estimated_steps=estimated,
    )


def fallback_plan(tools: Sequence[ToolDescriptor]) -> PlanResult:
    return PlanResult(
        summary=f"Available tools: {', '.join(t.name for t in tools)}",
        plan=(
            "Step 1: Analyze the user's request\n"
            "Step 2: Use appropriate tools to fulfill the request\n"
            "Step 3: Provide results to the user"
        ),
        relevant_tools=[t.name for t in tools[:FALLBACK_TOOL_COUNT]],
        estimated_steps=DEFAULT_ESTIMATED_STEPS,
    )


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class Planner:
    """
    Example:
        plan = await Planner(transport, "anthropic/claude-3.5-haiku").plan(query, registry.descriptors())
    """

    def __init__(self, transport: ChatTransport, model: str, history_window: int = 10) -> None:
        self._transport = transport
        self._model = model
        self._history_window = history_window

    def _messages(
        self, query: str, tools: Sequence[ToolDescriptor], history: Sequence[ChatMessage]
    ) -> list[ChatMessage]:
        messages = [ChatMessage(role="system", content=PLANNER_SYSTEM_PROMPT)]
        recent = list(history)[-self._history_window:] if self._history_window else []
        messages.extend(
            ChatMessage(role=m.role, content=m.content, images=m.images)
            for m in recent
            if m.role in ("user", "assistant")
        )
        messages.append(
            ChatMessage(
                role="user",
                content=PLANNER_PROMPT.format(
                    query=query,
                    context=summarize_conversation(history, self._history_window),
                    tools=describe_tools(tools),
                ),
            )
        )
        return messages

    async def plan(
        self,
        query: str,
        tools: Sequence[ToolDescriptor],
        history: Sequence[ChatMessage] = (),
    ) -> PlanResult:
        """Never raises on model failure; returns the fallback plan instead."""
        tools = list(tools)
        messages = self._messages(query, tools, history)
        logger.info("Planning with %d tools and %d messages", len(tools), len(messages))
        try:
            response = await self._transport.send_chat(
                self._model, messages, ChatOptions(temperature=0.6, max_tokens=8000)
            )
        except Exception as exc:
            logger.warning("Planning call failed, using fallback plan: %s", exc)
            return fallback_plan(tools)

        result = parse_planning_response(response.message.content or "", tools)
        logger.info("Plan created: %d estimated steps", result.estimated_steps)
        return result
