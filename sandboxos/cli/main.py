"""CLI entry point and commands.

Provides the main CLI application with commands for:
- run: Run a program under an isolation level and print the execution report
- levels: Show the policy catalog
"""

# Configure logging early before other imports
import sandboxos.logging_config  # noqa: F401

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from sandboxos.exceptions import ConfigurationError, InvalidLevelError
from sandboxos.host import Host
from sandboxos.sandbox.policies import (
    ExplicitSet,
    IsolationLevel,
    Policy,
    Tier,
    list_policies,
    parse_level,
)
from sandboxos.sandbox.runner import ExecutionResult, MonitoredRunner
from sandboxos.settings import get_settings

app = typer.Typer(
    name="sandboxos",
    help="Policy-driven execution sandbox",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


@app.command()
def run(
    level: Annotated[
        str,
        typer.Argument(help="Isolation level, as a number (0-4) or a name (NONE..MAXIMUM)"),
    ],
    program: Annotated[
        str,
        typer.Argument(help="Sandbox path of the program, e.g. /rom/programs/shell"),
    ],
    args: Annotated[
        Optional[list[str]],  # noqa: UP007
        typer.Argument(help="Arguments passed to the program"),
    ] = None,
    root: Annotated[
        Optional[Path],  # noqa: UP007
        typer.Option("--root", "-r", help="Host directory backing the sandbox paths"),
    ] = None,
) -> None:
    """Run a program in the sandbox and print the execution report.

    Exits with 0 when the program completed, 1 when it failed or timed out
    and 2 when the level or the host root is invalid.
    """
    try:
        isolation = parse_level(level)
    except InvalidLevelError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        console.print("Valid levels: " + ", ".join(f"{lvl.value} ({lvl.name})" for lvl in IsolationLevel))
        raise typer.Exit(code=2) from e

    host_root = root if root is not None else get_settings().host_root
    try:
        host = Host.local(host_root)
    except ConfigurationError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        raise typer.Exit(code=2) from e

    runner = MonitoredRunner(host=host)
    result = asyncio.run(runner.run(program, isolation, *(args or [])))

    _print_report(program, isolation, result)
    raise typer.Exit(code=0 if result.success else 1)


def _print_report(program: str, level: IsolationLevel, result: ExecutionResult) -> None:
    status = "[green]COMPLETED[/green]" if result.success else "[red]FAILED[/red]"
    lines = [
        f"Program: {escape(program)}",
        f"Level: {level.name} ({level.value})",
        f"Status: {status}",
        f"Time: {result.execution_time_seconds:.2f}s",
        f"File operations: {result.file_operations}",
    ]
    console.print(
        Panel(
            "\n".join(lines),
            title="Execution Report",
            border_style="green" if result.success else "red",
        )
    )

    if result.violations:
        console.print(f"[yellow]Security violations ({len(result.violations)}):[/yellow]")
        for i, violation in enumerate(result.violations, 1):
            console.print(f"  {i}. {violation}", markup=False, highlight=False)

    if result.output:
        console.print(f"[red]Error:[/red] {escape(result.output)}", highlight=False)


def _describe_blocked(policy: Policy) -> str:
    blocked = policy.blocked_capabilities
    if isinstance(blocked, ExplicitSet):
        return ", ".join(sorted(blocked.patterns)) or "-"
    if isinstance(blocked, Tier):
        return f"tier: {blocked.tier.value}"
    return "-"


@app.command()
def levels() -> None:
    """List the isolation levels and their policies."""
    table = Table(title="Isolation Levels", show_header=True)
    table.add_column("Level", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("File Access")
    table.add_column("Blocked", style="dim")
    table.add_column("Time Limit", justify="right")
    table.add_column("Network", justify="center")
    table.add_column("Description")

    for level, policy in list_policies():
        table.add_row(
            str(level.value),
            level.name,
            policy.file_access.value,
            _describe_blocked(policy),
            f"{policy.time_limit_seconds:g}s" if policy.time_limit_seconds else "none",
            "✓" if policy.network_allowed else "✗",
            policy.description,
        )

    console.print(table)


if __name__ == "__main__":
    app()
