# display.py
# All terminal output for the autoloop CLI.
#
# This module owns presentation entirely. harness.py never prints: it emits
# progress strings through a callback, and run.py points that callback here.
# Swap this file to change the entire UI.
#
# Colour language:
#   cyan     scaffolding and routing events
#   blue     model output
#   yellow   verification
#   green    success, confirmed
#   red      failures and halts

import json
import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from autoloop.models import AgentResult, CompletionVerdict, LoopState, ToolDescriptor

console = Console()


def configure_logging(level: str = "WARNING") -> None:
    """Route stdlib logging through rich so log lines and panels share the console."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _progress_color(message: str) -> str:
    if message.startswith(("❌", "🛑")):
        return "red"
    if message.startswith(("⚠️", "🔍")):
        return "yellow"
    if message.startswith("✅"):
        return "green"
    return "cyan"


# ---------------------------------------------------------------------------
# Pipeline entry
# ---------------------------------------------------------------------------


def banner(model: str, tools: list[ToolDescriptor], step_budget: int) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]autoloop[/bold cyan]\n"
            "[dim]Autonomous tool-using agent loop with completion verification[/dim]\n\n"
            f"[dim]Model       :[/dim] [white]{model}[/white]\n"
            f"[dim]Tools       :[/dim] [white]{', '.join(t.name for t in tools) or 'none'}[/white]\n"
            f"[dim]Step budget :[/dim] [white]{step_budget}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{prompt}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Live progress
# ---------------------------------------------------------------------------


def progress(message: str) -> None:
    """Progress sink handed to Scaffold(on_progress=...)."""
    color = _progress_color(message)
    console.print(_label("AGENT", color), f"[{color}]{_mono(message, 200)}[/{color}]")


def stream_content(fragment: str) -> None:
    """Content sink handed to Scaffold(on_content=...). Prints model text as it streams."""
    console.print(fragment, end="", style="blue", markup=False, highlight=False)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


def verdict(v: CompletionVerdict, loops: int) -> None:
    color = "green" if v.completion_status == "complete" else "yellow"
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style=color,
        show_header=True,
        header_style=f"bold {color}",
        padding=(0, 1),
    )
    table.add_column("Component", style="white")
    table.add_column("State", justify="center", width=12)
    table.add_column("Detail", style="dim white")

    for c in v.completed_components:
        table.add_row(c.description, "[green]done[/green]", _mono(", ".join(c.evidence), 60))
    for m in v.missing_components:
        table.add_row(m.description, f"[red]{m.priority}[/red]", _mono(", ".join(m.required_tools), 60))

    console.print()
    console.print(
        Panel(
            table,
            title=_label("VERIFICATION", color),
            subtitle=f"[dim]{v.completion_status} · {v.confidence_score}% confidence · {loops} loop(s)[/dim]",
            border_style=color,
            padding=(0, 1),
        )
    )


def execution_summary(result: AgentResult) -> None:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("Metric", style="bold white")
    table.add_column("Value", style="white")

    table.add_row("Run", result.run_id)
    table.add_row("State", result.state.value)
    table.add_row("Steps", str(result.steps))
    table.add_row("Tools", f"{result.successful_tools} ok / {result.failed_tools} failed")
    if result.tools_used:
        table.add_row("Used", _mono(", ".join(dict.fromkeys(result.tools_used)), 80))
    if result.artifacts:
        table.add_row("Artifacts", str(len(result.artifacts)))
    if result.usage:
        table.add_row("Usage", _mono(json.dumps(result.usage), 80))

    console.print()
    console.print(
        Panel(table, title=_label("EXECUTION SUMMARY", "cyan"), border_style="cyan", padding=(0, 1))
    )


def final_result(result: AgentResult) -> None:
    if result.verdict is not None:
        verdict(result.verdict, result.verification_loops)
    execution_summary(result)

    color = "red" if result.state in (LoopState.ERROR, LoopState.STOPPED) else "green"
    console.print()
    console.print(Rule(f"[{color}]RESULT[/{color}]", style=color))
    console.print(Markdown(result.content))
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]{reason}[/bold red]",
            title=_label("HALTED", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
