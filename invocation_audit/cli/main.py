"""
CLI interface for Invocation Audit.

Runs audited batches on the local fabric and shows the metric catalog.
"""

import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from invocation_audit.config.loader import (
    AuditConfig,
    default_audit_config,
    load_audit_config,
)
from invocation_audit.core.correlation import (
    DuplicateCorrelationError,
    IncompleteCorrelationError,
    UnexpectedTokenError,
)
from invocation_audit.core.cost import CostReport, ReportInvariantError
from invocation_audit.core.supervisor import BatchResult, InvocationSupervisor
from invocation_audit.fabric.functions import CONSOLE_FUNCTIONS, register_builtin_functions
from invocation_audit.fabric.local import LocalExecutionFabric

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_config(config_path: Optional[str], memory_size: int) -> AuditConfig:
    if config_path:
        return load_audit_config(config_path)
    return default_audit_config(memory_size)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option(
        "warning",
        "--log-level",
        help="Logging level: debug, info, warning or error"
    )
):
    """Invocation Audit CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Invocation Audit - Use --help to see available commands")


@app.command()
def catalog(
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to a YAML audit configuration"
    ),
    memory_size: int = typer.Option(
        512, "--memory-size", help="Memory size in MB for the default price list"
    )
):
    """List the billable metrics and their prices."""
    try:
        audit_config = _load_config(config, memory_size)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Metric Catalog")
    table.add_column("Metric", no_wrap=True)
    table.add_column("Unit", no_wrap=True)
    table.add_column("Price/Unit", justify="right", no_wrap=True)
    table.add_column("Comment", style="dim")
    for definition in audit_config.metrics:
        table.add_row(
            definition.name,
            definition.unit,
            f"${definition.price_per_unit:.10f}",
            definition.comment or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def run(
    invocations: int = typer.Option(
        100, "--invocations", "-n", help="Number of concurrent invocations"
    ),
    function: str = typer.Option(
        "consoleLog", "--function", "-f",
        help=f"Logging function to invoke, one of: {', '.join(CONSOLE_FUNCTIONS)}"
    ),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to a YAML audit configuration"
    ),
    memory_size: int = typer.Option(
        512, "--memory-size", help="Memory size in MB for the default price list"
    ),
    deadline: Optional[float] = typer.Option(
        None, "--deadline", "-d", help="Seconds to wait for every log line"
    ),
    workers: int = typer.Option(
        16, "--workers", "-w", help="Concurrent invocations on the local fabric"
    ),
    redelivery_rate: float = typer.Option(
        0.0, "--redelivery-rate", help="Probability a log line is delivered twice"
    ),
    seed: Optional[int] = typer.Option(
        None, "--seed", help="Seed for redelivery fault injection"
    ),
    use_queue: bool = typer.Option(
        False, "--use-queue", help="Bill request/response queue messages"
    ),
    csv_path: Optional[str] = typer.Option(
        None, "--csv", help="Write the cost report as CSV to this path"
    )
):
    """
    Run an audited batch on the local fabric.

    Each invocation logs one line carrying its index. The batch passes when
    every line was captured exactly once and the cost report's arithmetic
    checks out.
    """
    if function not in CONSOLE_FUNCTIONS:
        console.print(
            f"[red]Unknown function:[/] {function}. Use one of: {', '.join(CONSOLE_FUNCTIONS)}"
        )
        sys.exit(EXIT_CODE_FAIL)

    try:
        audit_config = _load_config(config, memory_size)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    wait_seconds = deadline or audit_config.correlation.deadline_seconds
    fabric = LocalExecutionFabric(
        max_workers=workers,
        use_queue=use_queue,
        redelivery_rate=redelivery_rate,
        seed=seed,
    )
    try:
        register_builtin_functions(fabric)
        supervisor = InvocationSupervisor.from_config(audit_config, fabric)
        batch = supervisor.run_batch(
            function,
            invocations,
            lambda i: (f"Executed call {i}",),
            deadline=wait_seconds,
        )
        _display_batch(batch)
        report = supervisor.settle_costs()
        _display_report(report)
        if csv_path:
            supervisor.accounting.write_report(csv_path)
            console.print(f"\nCost report written to {csv_path}")
    except IncompleteCorrelationError as e:
        console.print(f"[red]Incomplete:[/] {len(e.missing)} invocation(s) never logged")
        sys.exit(EXIT_CODE_FAIL)
    except DuplicateCorrelationError as e:
        console.print(f"[red]Duplicated output:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except UnexpectedTokenError as e:
        console.print(f"[red]Unexpected output:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except ReportInvariantError as e:
        console.print("[red]Cost report failed verification:[/]")
        for violation in e.violations:
            console.print(f"  {violation}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        fabric.shutdown()

    sys.exit(EXIT_CODE_FAIL if batch.errors else EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format sub-cent amounts without losing precision."""
    return f"${amount:,.8f}"


def _display_batch(batch: BatchResult):
    """Display the correlation outcome of a batch."""
    console.print(f"\n[bold]Batch {batch.epoch}[/bold]")
    console.print("-" * 40)
    console.print(f"Invocations succeeded: {batch.succeeded}")
    console.print(f"Invocations failed: {len(batch.errors)}")
    console.print(f"Log lines expected: {len(batch.ledger.expected)}")
    console.print(f"Missing: {batch.missing or 'none'}")
    console.print(f"Duplicated: {batch.duplicates or 'none'}")
    if batch.ledger.anomalies:
        console.print(f"[yellow]Unexpected tokens:[/] {dict(batch.ledger.anomalies)}")
    console.print(f"Elapsed: {batch.elapsed_seconds:.2f}s")


def _display_report(report: CostReport):
    """Display a cost report as a table."""
    table = Table(title="Cost Report")
    table.add_column("Metric", no_wrap=True)
    table.add_column("Unit", no_wrap=True)
    table.add_column("Price/Unit", justify="right", no_wrap=True)
    table.add_column("Measured", justify="right")
    table.add_column("Cost", justify="right", no_wrap=True)
    for item in report.line_items:
        table.add_row(
            item.name,
            item.unit,
            f"${item.price_per_unit:.10f}",
            f"{item.measured:,.6f}",
            _format_currency(item.cost),
        )
    table.add_row("[bold]total[/bold]", "", "", "", f"[bold]{_format_currency(report.total)}[/bold]")
    console.print()
    console.print(table)


if __name__ == "__main__":
    app()
