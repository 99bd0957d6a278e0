"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "blue",
    "delayed": "cyan",
    "active": "yellow",
    "completed": "green",
    "failed": "red",
    "retry-scheduled": "magenta",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_stats_table(stats: dict[str, Any]) -> Table:
    """Create a formatted table of job counts per status"""
    title = f"Queue: {stats.get('queue') or 'all'}"
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("Status", justify="left", style="bold")
    table.add_column("Jobs", justify="right", style="cyan")

    for status, count in stats.get("by_status", {}).items():
        table.add_row(_styled_status(status), str(count))

    return table


def create_status_panel(stats: dict[str, Any], database_ms: float) -> Panel:
    """Create formatted panel for queue health"""
    content = f"""
📦 [bold blue]Queue Health[/bold blue]

• Queue depth: [yellow]{stats.get("queue_depth", 0)}[/yellow]
• Active jobs: [cyan]{stats.get("active_jobs", 0)}[/cyan]
• Workers holding leases: [green]{stats.get("active_workers", 0)}[/green]
• Database round-trip: [blue]{database_ms:.1f}ms[/blue]
"""

    return Panel(content, title="System Status", border_style="green")


def display_job(job: dict[str, Any]):
    """Display a single job with its claim and outcome details"""
    lines = [
        f"• ID: [cyan]{job.get('id')}[/cyan]",
        f"• Queue: [blue]{job.get('queue')}[/blue]",
        f"• Type: [magenta]{job.get('type')}[/magenta]",
        f"• Status: {_styled_status(str(job.get('status')))}",
        f"• Attempts: {job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
        f"• Available at: {job.get('available_at') or '-'}",
        f"• Dedupe key: {job.get('dedupe_key') or '-'}",
    ]
    if job.get("locked_by"):
        lines.append(f"• Locked by: [yellow]{job['locked_by']}[/yellow]")
        lines.append(f"• Lease expires: {job.get('lease_expires_at') or '-'}")
    if job.get("completed_at"):
        lines.append(f"• Completed at: {job['completed_at']}")

    console.print(Panel("\n".join(lines), title="Job", border_style="cyan"))

    if job.get("payload") is not None:
        console.print(Panel(str(job["payload"]), title="Payload", border_style="blue"))
    if job.get("last_error"):
        console.print(Panel(job["last_error"], title="Last Error", border_style="red"))
    if job.get("result"):
        console.print(Panel(str(job["result"]), title="Result", border_style="green"))
