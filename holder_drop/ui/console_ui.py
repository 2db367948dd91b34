from typing import Iterable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.prompt import Confirm
from rich.table import Table

from ..allocation import SimulationReport
from ..models import (
    Allocation,
    DistributionRecord,
    DistributionRequest,
    DistributionResult,
    ResultStatus,
    Snapshot,
    to_ui_amount,
)

STATUS_STYLES = {
    ResultStatus.PENDING: "white",
    ResultStatus.SUBMITTING: "cyan",
    ResultStatus.AWAITING_CONFIRMATION: "yellow",
    ResultStatus.RETRY_PENDING: "magenta",
    ResultStatus.CONFIRMED: "green",
    ResultStatus.FAILED: "bold red",
}


def _short(address: Optional[str], keep: int = 6) -> str:
    if not address or len(address) <= keep * 2 + 3:
        return address or "-"
    return f"{address[:keep]}...{address[-keep:]}"


class ConsoleUI:
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def display_snapshot(self, snapshot: Snapshot, decimals: int = 0, limit: int = 20):
        """Show holder count, filters and the largest holders."""
        table = Table(
            title=f"Holders of {_short(snapshot.mint)}",
            show_header=True,
            header_style="bold yellow",
            border_style="bright_blue",
        )
        table.add_column("#", justify="right", style="dim")
        table.add_column("Address", style="cyan")
        table.add_column("Balance", justify="right", style="green")

        largest = sorted(snapshot.holders, key=lambda h: (-h.balance, h.address))[:limit]
        for index, holder in enumerate(largest, 1):
            table.add_row(str(index), holder.address, f"{to_ui_amount(holder.balance, decimals):,}")

        filters = snapshot.filters
        summary = (
            f"[bright_white]Eligible holders:[/] [cyan]{snapshot.holder_count:,}[/]\n"
            f"[bright_white]Total balance:[/] [cyan]{to_ui_amount(snapshot.total_balance, decimals):,}[/]\n"
            f"[bright_white]Threshold:[/] {filters.threshold}   "
            f"[bright_white]Excluded:[/] {len(filters.excluded)}   "
            f"[bright_white]Captured:[/] {snapshot.captured_at:%Y-%m-%d %H:%M:%S} UTC"
        )
        if snapshot.truncated:
            summary += f"\n[yellow]Truncated to the largest {filters.max_holders} holders[/]"
        self.console.print(Panel(summary, title="[bold]Snapshot[/]", border_style="bright_blue"))
        self.console.print(table)
        if snapshot.holder_count > limit:
            self.console.print(f"[dim]... and {snapshot.holder_count - limit:,} more[/]")

    def display_allocation(self, allocation: Allocation, decimals: int = 0, limit: int = 20):
        table = Table(title=f"Allocation ({allocation.mode.value})", header_style="bold magenta",
                      border_style="bright_blue")
        table.add_column("Recipient", style="cyan")
        table.add_column("Amount", justify="right", style="green")
        for entry in allocation.entries[:limit]:
            table.add_row(entry.recipient, f"{to_ui_amount(entry.amount, decimals):,}")
        self.console.print(table)
        if len(allocation.entries) > limit:
            self.console.print(f"[dim]... and {len(allocation.entries) - limit:,} more[/]")

    def display_simulation(self, report: SimulationReport, decimals: int = 0):
        table = Table(title="Simulation", show_header=True, header_style="bold bright_magenta",
                      border_style="bright_blue")
        table.add_column("Metric", style="cyan", justify="right")
        table.add_column("Value", style="green")

        rows = [
            ("Recipients", f"{report.recipient_count:,}"),
            ("Batches", f"{report.batch_count:,}"),
            ("Total", f"{to_ui_amount(report.total_amount, decimals):,}"),
            ("Distributed", f"{to_ui_amount(report.distributed, decimals):,}"),
            ("Undistributed", f"{to_ui_amount(report.undistributed, decimals):,}"),
            ("Min / Max", f"{to_ui_amount(report.min_amount, decimals):,} / "
                          f"{to_ui_amount(report.max_amount, decimals):,}"),
            ("Average", f"{to_ui_amount(report.average_amount, decimals):.6f}"),
            ("Estimated fees", f"{report.estimated_fee} SOL"),
            ("Estimated time", f"{report.estimated_seconds:.0f}s"),
        ]
        for name, value in rows:
            table.add_row(name, value)
        self.console.print(table)

        for risk in report.risk_factors:
            self.console.print(f"[yellow]⚠ {risk}[/]")

    def confirm_execution(self, request: DistributionRequest) -> bool:
        amount = to_ui_amount(request.allocated_amount, request.decimals)
        self.console.print(Panel(
            f"[bright_white]Request:[/] [cyan]{request.id}[/]\n"
            f"[bright_white]Token:[/] [cyan]{request.mint}[/]\n"
            f"[bright_white]From:[/] [cyan]{request.source}[/]\n"
            f"[bright_white]Sending:[/] [green]{amount:,}[/] to [green]{len(request.entries):,}[/] recipients",
            title="[bold red]Confirm distribution[/]",
            border_style="red",
        ))
        return Confirm.ask("Send these transfers?", console=self.console, default=False)

    def progress(self) -> Progress:
        return Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=self.console,
        )

    def display_result_line(self, result: DistributionResult):
        style = STATUS_STYLES.get(result.status, "white")
        tx = f" {_short(result.transaction_id, 8)}" if result.transaction_id else ""
        err = f" [dim]{result.error}[/]" if result.error and not result.is_terminal else ""
        self.console.print(f"[{style}]{result.status.value:<22}[/] {result.recipient}{tx}{err}")

    def display_record(self, record: DistributionRecord):
        request = record.request
        if record.is_terminal and record.failed_count == 0:
            border, title = "green", "Distribution complete"
        elif record.is_terminal:
            border, title = "yellow", "Distribution complete with failures"
        else:
            border, title = "red", "Distribution incomplete"

        text = (
            f"[bright_white]Request:[/] [cyan]{request.id}[/]\n"
            f"[bright_white]Confirmed:[/] [green]{record.confirmed_count}[/] "
            f"({to_ui_amount(record.confirmed_amount, request.decimals):,} tokens)\n"
            f"[bright_white]Failed:[/] [red]{record.failed_count}[/]\n"
            f"[bright_white]Unresolved:[/] {record.pending_count}"
        )
        if record.pending_count:
            text += f"\n[yellow]Resume with: holder-drop execute --resume {request.id}[/]"
        self.console.print(Panel(text, title=f"[bold]{title}[/]", border_style=border))

        failed = [r for r in record.ordered_results() if r.status == ResultStatus.FAILED]
        if failed:
            table = Table(title="Failed transfers", header_style="bold red", border_style="red")
            table.add_column("Recipient", style="cyan")
            table.add_column("Attempts", justify="right")
            table.add_column("Error")
            for result in failed:
                table.add_row(result.recipient, str(result.attempts), result.error or "")
            self.console.print(table)

    def display_history(self, records: Iterable[DistributionRecord]):
        table = Table(title="Distribution history", header_style="bold yellow", border_style="bright_blue")
        table.add_column("Request", style="cyan")
        table.add_column("Created")
        table.add_column("Token")
        table.add_column("Mode")
        table.add_column("Confirmed", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Unresolved", justify="right")
        table.add_column("Completed")

        count = 0
        for record in records:
            request = record.request
            table.add_row(
                request.id,
                f"{request.created_at:%Y-%m-%d %H:%M}",
                _short(request.mint),
                request.mode.value,
                str(record.confirmed_count),
                str(record.failed_count),
                str(record.pending_count),
                f"{record.completed_at:%Y-%m-%d %H:%M}" if record.completed_at else "-",
            )
            count += 1
        if count:
            self.console.print(table)
        else:
            self.console.print("[dim]No distributions recorded[/]")

    def display_error(self, message: str):
        panel = Panel(
            f"[bold red]Error: {message}[/]",
            title="[bold red]Error[/]",
            border_style="red"
        )
        self.console.print(panel)
