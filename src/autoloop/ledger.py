# ledger.py
# Append-only per-run record of agent steps.
#
# The ledger is verification evidence, not history: it lives for one run,
# is finalized with the closing verdict, and its live steps are then dropped.
# Tool results never enter it; the assistant's own narration of each step is
# the evidence.

import logging
from datetime import datetime, timezone
from typing import Protocol

from pydantic import BaseModel, Field

from autoloop.models import ChatMessage, ExecutionStep, ToolCallResult

logger = logging.getLogger(__name__)

PROGRESS_MARKERS = ("✅", "🔄", "**Progress", "**Current State", "**Next Steps")
SUMMARY_MARKERS = PROGRESS_MARKERS + (
    "📊",
    "🎯",
    "**Navigated",
    "**Found",
    "**Clicked",
    "**Captured",
    "**Extracted",
    "**Retrieved",
)
ACCOMPLISHMENT_VERBS = ("Navigated", "Found", "Extracted", "Retrieved", "Captured", "Clicked", "Processed")


def extract_progress_summary(content: str) -> str:
    """Short digest of a step: its progress lines, else its first sentence."""
    lines = [line for line in content.split("\n") if any(m in line for m in PROGRESS_MARKERS)]
    if lines:
        return " | ".join(lines)[:200]
    return content.split(".")[0][:100]


class LedgerRecord(BaseModel):
    run_id: str
    original_query: str
    steps: list[ExecutionStep] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    final_status: str | None = None
    final_confidence: int | None = None


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class LedgerStore(Protocol):
    """Where ledger records are kept while a run is live."""

    def save(self, record: LedgerRecord) -> None: ...

    def load(self, run_id: str) -> LedgerRecord | None: ...

    def delete(self, run_id: str) -> None: ...


class InMemoryLedgerStore:
    def __init__(self) -> None:
        self._records: dict[str, LedgerRecord] = {}

    def save(self, record: LedgerRecord) -> None:
        self._records[record.run_id] = record.model_copy(deep=True)

    def load(self, run_id: str) -> LedgerRecord | None:
        record = self._records.get(run_id)
        return record.model_copy(deep=True) if record is not None else None

    def delete(self, run_id: str) -> None:
        self._records.pop(run_id, None)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class ExecutionLedger:
    """
    One run's step log.

    Only the task running the agent loop writes to a ledger, so no locking.
    Each append is persisted to the store so a crashed run leaves its trail.
    """

    def __init__(self, run_id: str, original_query: str, store: LedgerStore | None = None) -> None:
        self._store = store if store is not None else InMemoryLedgerStore()
        self._record = LedgerRecord(run_id=run_id, original_query=original_query)
        self._finalized = False
        self._store.save(self._record)
        logger.debug("Ledger %s initialized", run_id)

    @property
    def run_id(self) -> str:
        return self._record.run_id

    @property
    def steps(self) -> list[ExecutionStep]:
        return list(self._record.steps)

    @property
    def record(self) -> LedgerRecord:
        return self._record

    def append(
        self,
        step_number: int,
        message: ChatMessage,
        verification_loop: int | None = None,
    ) -> ExecutionStep:
        if self._finalized:
            raise RuntimeError(f"Ledger {self.run_id} is finalized; no further appends.")
        step = ExecutionStep(
            step_number=step_number,
            assistant_message=ChatMessage(
                role=message.role,
                content=message.content,
                tool_calls=message.tool_calls,
            ),
            tool_calls=tuple(message.tool_calls or ()),
            progress_summary=extract_progress_summary(message.content or ""),
            verification_loop=verification_loop,
        )
        self._record.steps.append(step)
        self._store.save(self._record)
        logger.debug("Ledger %s step %d recorded (%s)", self.run_id, step_number, step.progress_summary[:50])
        return step

    def finalize(self, final_status: str, final_confidence: int) -> LedgerRecord:
        """Record the closing verdict, persist it, and drop the live steps."""
        self._record.end_time = datetime.now(timezone.utc)
        self._record.final_status = final_status
        self._record.final_confidence = final_confidence
        self._store.save(self._record)
        closed = self._record.model_copy(deep=True)
        self._record.steps = []
        self._finalized = True
        logger.info("Ledger %s finalized: %s (%d%%)", self.run_id, final_status, final_confidence)
        return closed

    # ------------------------------------------------------------------
    # Final answer summary
    # ------------------------------------------------------------------

    def duration(self) -> str:
        if not self._record.steps:
            return "Unknown"
        elapsed = self._record.steps[-1].timestamp - self._record.steps[0].timestamp
        seconds = round(elapsed.total_seconds())
        if seconds < 60:
            return f"{seconds} seconds"
        return f"{seconds // 60}m {seconds % 60}s"

    def key_accomplishments(self) -> list[str]:
        accomplishments: list[str] = []
        for step in self._record.steps:
            for line in (step.assistant_message.content or "").split("\n"):
                if "✅" in line and any(verb in line for verb in ACCOMPLISHMENT_VERBS):
                    cleaned = line.replace("✅", "").strip()
                    if cleaned and cleaned not in accomplishments:
                        accomplishments.append(cleaned)
        return accomplishments[:10]

    def summary(self, results: list[ToolCallResult]) -> str:
        """Markdown execution summary appended to the final answer. Empty without steps."""
        steps = self._record.steps
        if not steps:
            return ""

        successful = [r for r in results if r.success]
        lines = [
            "---",
            "",
            "## Execution Summary",
            "",
            "**Overall Progress:**",
            f"- Completed {len(steps)} execution steps",
            f"- Executed {len(results)} tools ({len(successful)} successful, {len(results) - len(successful)} failed)",
            f"- Duration: {self.duration()}",
            "",
            "**Step-by-Step Progress:**",
            "",
        ]
        for step in steps:
            loop = f" [Loop {step.verification_loop}]" if step.verification_loop else ""
            lines.append(f"**Step {step.step_number}** ({step.timestamp:%H:%M:%S}){loop}:")
            content = step.assistant_message.content or ""
            progress = [
                line.strip() for line in content.split("\n")
                if line.strip() and any(m in line for m in SUMMARY_MARKERS)
            ]
            lines.extend(progress or [step.progress_summary])
            if step.tool_calls:
                lines.append(f"Tools: {', '.join(call.name for call in step.tool_calls)}")
            lines.append("")

        accomplishments = self.key_accomplishments()
        if accomplishments:
            lines.append("**Key Accomplishments:**")
            lines.extend(f"- {item}" for item in accomplishments)
            lines.append("")

        if successful:
            lines.append("**Final Results:**")
            counts: dict[str, int] = {}
            for result in successful:
                counts[result.tool_name] = counts.get(result.tool_name, 0) + 1
            for name, count in counts.items():
                lines.append(f"- **{name}**: {count} successful execution{'s' if count > 1 else ''}")

        return "\n".join(lines).rstrip()
