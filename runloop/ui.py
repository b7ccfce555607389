"""
Console output for runloop.

Everything here writes to stdout of the current process. The launcher points a
supervisor's stdout at a per-run file, so this doubles as the runner log.
"""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.table import Table
from rich.box import ROUNDED

# Synthwave color palette
PURPLE = "#7b2cbf"
MAGENTA = "#e040fb"
HOT_PINK = "#ff006e"
CYAN = "#00ffff"
GOLD = "#ffd700"
WHITE = "#ffffff"
DIM = "#6b5b7d"
SUCCESS = "#00ff9f"
ERROR = "#ff4757"
WARN = "#ffd93d"

console = Console()

STATUS_COLORS = {
    "queued": DIM,
    "running": CYAN,
    "completed": SUCCESS,
    "failed": ERROR,
    "stopped": WARN,
    "canceled": WARN,
}


def print_header(text: str, style: str = MAGENTA):
    """Print a section header."""
    console.print()
    console.print(Panel(
        Text(text, style=f"bold {WHITE}", justify="center"),
        border_style=style,
        box=ROUNDED,
        padding=(0, 2),
    ))


def print_run_header(run_id: str, sprint_name: str, branch: Optional[str], agent: str, max_iterations: int):
    """Print the banner shown when a supervisor starts."""
    print_header(f"RUN {run_id}")
    console.print(f"[{DIM}]Sprint:[/] [{WHITE}]{sprint_name}[/]")
    if branch:
        console.print(f"[{DIM}]Branch:[/] [{CYAN}]{branch}[/]")
    console.print(f"[{DIM}]Agent:[/] [{HOT_PINK}]{agent}[/]  [{DIM}]max iterations:[/] [{WHITE}]{max_iterations}[/]")


def print_iteration(current: int, max_iter: int):
    """Print iteration header with progress visualization."""
    box_width = 50
    filled = "◆" * min(current, 20)
    empty = "◇" * max(0, min(max_iter, 20) - min(current, 20))

    iteration_text = f"ITERATION {current}/{max_iter}"
    content_length = len(iteration_text) + len(filled) + len(empty)
    spaces_needed = max(1, box_width - content_length - 2)

    console.print()
    console.print(f"[{MAGENTA}]╔{'═' * box_width}╗[/]")
    console.print(f"[{MAGENTA}]║[/] [{HOT_PINK}]{iteration_text}[/]{' ' * spaces_needed}[{CYAN}]{filled}[/][{DIM}]{empty}[/] [{MAGENTA}]║[/]")
    console.print(f"[{MAGENTA}]╚{'═' * box_width}╝[/]")


def print_task_start(task_id: str, title: str, description: str = ""):
    """Print task starting with indicator and optional description."""
    line = Text()
    line.append("\n▸▸ ", style=MAGENTA)
    line.append(task_id, style=WHITE)
    if title:
        line.append(f" {title}", style=f"bold {WHITE}")
    console.print(line)

    if description:
        desc = description[:80] + "..." if len(description) > 80 else description
        console.print(f"   [{DIM}]{desc}[/]")


def print_task_complete(task_id: str):
    """Print task completion."""
    line = Text()
    line.append("  ✓✓ ", style=SUCCESS)
    line.append(task_id, style=WHITE)
    console.print(line)


def print_task_failed(task_id: str, error: str):
    """Print task failure."""
    line = Text()
    line.append("  ✗✗ ", style=ERROR)
    line.append(task_id, style=WHITE)
    line.append(f" {error[:50]}", style=ERROR)
    console.print(line)


def print_usage_limit(task_id: str):
    line = Text()
    line.append("  ⏸ ", style=WARN)
    line.append(task_id, style=WHITE)
    line.append(" usage limit hit - run halted, retry later", style=WARN)
    console.print(line)


def print_warning(message: str):
    console.print(f"[{WARN}]⚠ {message}[/]")


def print_error(message: str):
    console.print(f"[{ERROR}]{message}[/]")


def print_agent_output(text: str):
    """Echo raw agent output (verbose mode)."""
    console.print(text, end="", markup=False, highlight=False)


def print_run_finished(status: str, reason: Optional[str], iterations: int, message: Optional[str]):
    """Print the final run state."""
    color = STATUS_COLORS.get(status, WHITE)
    console.print()
    console.print(f"[{MAGENTA}]∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿[/]")
    reason_text = f" ({reason})" if reason else ""
    console.print(f"[bold {color}]RUN {status.upper()}{reason_text}[/]")
    console.print(f"[{WHITE}]{iterations} iteration(s)[/]")
    if message:
        console.print(f"[{DIM}]{message}[/]")
    console.print(f"[{MAGENTA}]∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿≋∿[/]")
    console.print()


def print_run_table(run: dict):
    """Print a run record as a two-column table."""
    table = Table(box=ROUNDED, show_header=False, border_style=PURPLE)
    table.add_column("Field", style=DIM)
    table.add_column("Value", style=WHITE)

    status = run.get("status", "")
    for key, value in run.items():
        if value is None or value == [] or value == "":
            continue
        if key == "status":
            table.add_row(key, f"[{STATUS_COLORS.get(status, WHITE)}]{value}[/]")
        elif isinstance(value, list):
            table.add_row(key, "\n".join(str(v) for v in value))
        else:
            table.add_row(key, str(value))

    console.print(table)
