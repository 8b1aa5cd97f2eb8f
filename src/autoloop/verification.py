# verification.py
# Model-judged completion check run after the agent loop goes quiet.
#
# The verifier sees evidence only: tool results and the ledger's step log.
# It never sees the raw conversation. Any failure yields a conservative
# fallback verdict so the loop can always decide what to do next.

import json
import logging
import re
from collections.abc import Sequence

from pydantic import ValidationError

from autoloop.models import (
    AgentContext,
    ChatMessage,
    ChatOptions,
    CompletedComponent,
    CompletionStatus,
    CompletionVerdict,
    EvidenceSummary,
    ExecutionStep,
    MissingComponent,
    NextAction,
    ToolCallResult,
)
from autoloop.transport import ChatTransport

logger = logging.getLogger(__name__)

VERIFIER_SYSTEM_PROMPT = (
    "You are a thorough task completion verifier. Analyze evidence and provide structured "
    "completion analysis. Be critical and only mark tasks as complete when you have concrete proof."
)

VERIFIER_PROMPT = """\
Analyze whether the user's request has been fully satisfied.

**ORIGINAL USER REQUEST:**
"{query}"

**CURRENT EXECUTION STATUS:**
- Step: {step}
- Tools executed: {total}
- Successful tools: {succeeded}
- Failed tools: {failed}

**EVIDENCE COLLECTED:**
{evidence}

**EXECUTION PLAN (if available):**
{plan}

Provide a thorough analysis in JSON. Only mark "complete" if you have concrete evidence \
ALL parts of the request are done.

Respond in this EXACT JSON format:
{{
  "completedComponents": [
    {{"description": "What was completed", "status": "completed|verified|attempted",
      "evidence": ["concrete evidence"], "confidence": 95}}
  ],
  "missingComponents": [
    {{"description": "What is still missing", "priority": "high|medium|low",
      "requiredTools": ["tool_name"], "estimatedEffort": 3, "blockedBy": ["dependency"]}}
  ],
  "completionStatus": "complete|partial|incomplete",
  "confidenceScore": 85,
  "nextActions": [
    {{"action": "Specific action needed", "toolsNeeded": ["tool_name"],
      "expectedOutput": "What this should produce", "dependencies": ["what must happen first"]}}
  ],
  "evidenceSummary": {{
    "filesCreated": [], "dataRetrieved": [], "operationsPerformed": [], "verificationResults": []
  }}
}}\
"""

FALLBACK_CONFIDENCE = {"complete": 80, "partial": 60, "incomplete": 40}


def _preview(value, limit: int = 200) -> str:
    if value is None:
        return "Executed successfully"
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit] + "..."


def format_evidence(
    results: Sequence[ToolCallResult],
    context: AgentContext,
    steps: Sequence[ExecutionStep] = (),
) -> str:
    """Render tool results, ledger steps and run counters as verifier input."""
    if not results:
        return "No tool results available for verification."

    lines: list[str] = []

    successful = [r for r in results if r.success]
    if successful:
        lines.append(f"**SUCCESSFUL OPERATIONS ({len(successful)}):**")
        lines.extend(f"{i}. **{r.tool_name}**: {_preview(r.result)}" for i, r in enumerate(successful, 1))
        lines.append("")

    failed = [r for r in results if not r.success]
    if failed:
        lines.append(f"**FAILED OPERATIONS ({len(failed)}):**")
        lines.extend(f"{i}. **{r.tool_name}**: {r.error or 'Unknown error'}" for i, r in enumerate(failed, 1))
        lines.append("")

    if steps:
        lines.append(f"**DETAILED EXECUTION HISTORY ({len(steps)} steps):**")
        for step in steps:
            lines.append(f"\n**Step {step.step_number}** ({step.timestamp:%H:%M:%S}):")
            lines.append(f"Progress: {step.progress_summary}")
            content = step.assistant_message.content or ""
            if content:
                lines.append(f"Content: {content[:500]}{'...' if len(content) > 500 else ''}")
            if step.tool_calls:
                lines.append(f"Tools Used: {', '.join(call.name for call in step.tool_calls)}")
            if step.verification_loop:
                lines.append(f"Verification Loop: {step.verification_loop}")
        lines.append("")

    lines.append("**EXECUTION CONTEXT:**")
    lines.append(f"- Current step: {context.current_step}")
    lines.append(f"- Total attempts: {len(context.attempts)}")
    if context.progress_log:
        lines.append(f"- Progress log: {', '.join(context.progress_log)}")

    return "\n".join(lines)


def fallback_verdict(results: Sequence[ToolCallResult], status: CompletionStatus) -> CompletionVerdict:
    """Conservative verdict built from tool results alone."""
    successful = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    incomplete = status != "complete"

    return CompletionVerdict(
        completion_status=status,
        confidence_score=FALLBACK_CONFIDENCE[status],
        completed_components=[
            CompletedComponent(
                description=f"{r.tool_name} executed successfully",
                status="completed",
                evidence=[str(r.result)[:100] if r.result else "Tool executed"],
                confidence=70,
            )
            for r in successful
        ],
        missing_components=[
            MissingComponent(
                description="Unable to verify complete task fulfillment",
                priority="high",
                required_tools=["verification_needed"],
                estimated_effort=2,
                blocked_by=["unclear_requirements"],
            )
        ] if incomplete else [],
        next_actions=[
            NextAction(
                action="Review task requirements and continue execution",
                tools_needed=["analysis"],
                expected_output="Clarified next steps",
                dependencies=["task_analysis"],
            )
        ] if incomplete else [],
        evidence_summary=EvidenceSummary(
            operations_performed=[r.tool_name for r in successful],
            verification_results=[f"{len(successful)} successful, {len(failed)} failed"],
        ),
    )


def parse_verdict(content: str) -> CompletionVerdict | None:
    """Parse the verifier's JSON. None when it is unusable."""
    raw = content.strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw)
        raw = re.sub(r"\s*```$", "", raw)

    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError as exc:
        logger.warning("Verifier returned malformed JSON: %s", exc)
        return None

    if not isinstance(data, dict) or not data.get("completionStatus") or data.get("confidenceScore") is None:
        logger.warning("Verifier response lacks completionStatus/confidenceScore")
        return None

    try:
        return CompletionVerdict.model_validate(data)
    except ValidationError as exc:
        logger.warning("Verifier response failed validation: %s", exc)
        return None


class Verifier:
    """
    Example:
        verdict = await Verifier(transport, model).verify(query, results, context, ledger.steps)
    """

    def __init__(self, transport: ChatTransport, model: str) -> None:
        self._transport = transport
        self._model = model

    def _messages(
        self,
        query: str,
        results: Sequence[ToolCallResult],
        context: AgentContext,
        steps: Sequence[ExecutionStep],
    ) -> list[ChatMessage]:
        succeeded = sum(1 for r in results if r.success)
        prompt = VERIFIER_PROMPT.format(
            query=query,
            step=context.current_step,
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            evidence=format_evidence(results, context, steps),
            plan=context.execution_plan or "No plan generated",
        )
        return [
            ChatMessage(role="system", content=VERIFIER_SYSTEM_PROMPT),
            ChatMessage(role="user", content=prompt),
        ]

    async def verify(
        self,
        query: str,
        results: Sequence[ToolCallResult],
        context: AgentContext,
        steps: Sequence[ExecutionStep] = (),
    ) -> CompletionVerdict:
        options = ChatOptions(temperature=0.1, max_tokens=2000, response_format={"type": "json_object"})
        try:
            response = await self._transport.send_chat(
                self._model, self._messages(query, results, context, steps), options
            )
        except Exception as exc:
            logger.warning("Verification call failed, using fallback verdict: %s", exc)
            return fallback_verdict(results, "incomplete")

        verdict = parse_verdict(response.message.content or "")
        if verdict is None:
            return fallback_verdict(results, "partial")

        logger.info(
            "Verification: %s (%d%% confidence)", verdict.completion_status, verdict.confidence_score
        )
        return verdict
