# display.py
# All terminal output for the agent kernel demo.
#
# This module owns presentation entirely. The kernel never prints; run.py
# hands results to named functions here. Swap this file to change the UI.
#
# Colour language:
#   cyan    scaffolding / requests
#   blue    tool catalog and remote sources
#   magenta ReAct internals (think / act records)
#   green   success
#   red     failures and forced stops

import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from agent_kernel.models import AgentResult, Phase, TerminationReason, ToolDefinition

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str | None, max_len: int = 120) -> str:
    value = value or ""
    if len(value) > max_len:
        return escape(value[:max_len]) + "…"
    return escape(value)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Route the package's log records through rich, on the shared console."""
    logger = logging.getLogger("agent_kernel")
    logger.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        logger.addHandler(RichHandler(console=console, show_path=False, markup=False))
    logger.propagate = False


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def banner(model: str, max_steps: int, sources: list[str]) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]ReAct Agent Kernel[/bold cyan]\n"
            "[dim]Bounded think → act → observe loop with dynamic tool sources[/dim]\n\n"
            f"[dim]Model      :[/dim] [white]{model}[/white]\n"
            f"[dim]Max steps  :[/dim] [white]{max_steps}[/white]\n"
            f"[dim]Sources    :[/dim] [white]{', '.join(sources) or 'local only'}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def tool_catalog(definitions: list[ToolDefinition]) -> None:
    table = Table(box=box.SIMPLE_HEAVY, border_style="blue", header_style="bold blue", padding=(0, 1))
    table.add_column("Tool", style="bold white")
    table.add_column("Description", style="dim white")
    for d in definitions:
        table.add_row(d.name, _mono(d.description, 70))
    console.print(Panel(table, title=_label("TOOLS", "blue"), border_style="blue", padding=(0, 1)))


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(prompt)}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Run trail
# ---------------------------------------------------------------------------


def step_trail(result: AgentResult) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", justify="center", width=6)
    table.add_column("Phase", width=7)
    table.add_column("Tools", width=24)
    table.add_column("ms", justify="right", width=7)
    table.add_column("Detail", style="dim white")

    for record in result.step_records:
        phase = "[magenta]THINK[/magenta]" if record.phase is Phase.THINK else "[blue]ACT[/blue]"
        tools = ", ".join(c.name for c in record.tool_calls) or "-"
        if record.error:
            detail = f"[red]{_mono(record.error, 60)}[/red]"
        elif record.tool_results:
            detail = " | ".join(
                ("✓ " + _mono(r.result, 40)) if r.success else ("✗ " + _mono(r.error, 40))
                for r in record.tool_results
            )
        else:
            detail = _mono(record.prompt_summary, 60)
        table.add_row(str(record.step_number), phase, tools, str(record.duration_ms), detail)

    console.print(
        Panel(
            table,
            title="[dim]STEP TRAIL[/dim]",
            subtitle=f"[dim]trace {result.trace_id} · {result.total_steps} step(s) · {result.total_duration_ms} ms[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


def run_result(result: AgentResult) -> None:
    step_trail(result)
    if result.success and result.termination_reason is TerminationReason.COMPLETED:
        final_result(result.answer or "")
    elif result.success:
        halt(f"Stopped: {result.termination_reason.value}\n\n{result.answer or ''}".rstrip())
    else:
        halt(f"Run failed: {result.error}")


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(result)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
