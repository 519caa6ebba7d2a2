import logging
import subprocess
import sys
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from circulation import database
from circulation.config import settings
from circulation.errors import CirculationError
from circulation.models import utcnow
from circulation.orchestrator import LifecycleOrchestrator

console = Console()

app = typer.Typer(help="Library circulation operator CLI")


@app.callback()
def _global_options(
    db_file: Optional[str] = typer.Option(None, "--db", help="SQLite file to operate on"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Global options shared by every command."""
    logging.basicConfig(
        level="DEBUG" if verbose else settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if db_file:
        database.DATABASE_FILE = db_file


def _orchestrator() -> LifecycleOrchestrator:
    return LifecycleOrchestrator()


def _fail(error: CirculationError) -> NoReturn:
    console.print(f"[bold red]Error ({error.code}):[/] {error.message}")
    raise typer.Exit(code=1)


@app.command("init-db")
def cli_init_db():
    """Create the circulation tables if they do not exist."""
    database.initialize_database()
    console.print(f"[green]Database ready:[/] {database.DATABASE_FILE}")


@app.command("auto-expire")
def cli_auto_expire():
    """Expire every active reservation past its expiry date."""
    orch = _orchestrator()
    try:
        expired = orch.auto_expire()
    except CirculationError as e:
        _fail(e)
    console.print(f"{len(expired)} reservations expired")


@app.command("overdue")
def cli_overdue(
    page: int = typer.Option(1, "--page", "-p", min=1),
    limit: int = typer.Option(settings.default_page_size, "--limit", "-l", min=1, max=settings.max_page_size),
):
    """List issued loans that are past their due date."""
    orch = _orchestrator()
    now = utcnow()
    loans, pagination = orch.list_overdue(page=page, limit=limit, now=now)
    if not loans:
        console.print("No overdue loans.")
        return
    table = Table(title=f"Overdue loans (page {pagination['page']}/{pagination['pages']})")
    table.add_column("Loan", justify="right")
    table.add_column("Borrower", justify="right")
    table.add_column("Book", justify="right")
    table.add_column("Due")
    table.add_column("Days late", justify="right")
    table.add_column("Fine so far", justify="right")
    for loan in loans:
        table.add_row(
            str(loan.id),
            str(loan.borrower_id),
            str(loan.book_id),
            loan.due_date.date().isoformat(),
            str(loan.overdue_days(now)),
            str(orch.fines.overdue_amount(loan.due_date, now)),
        )
    console.print(table)
    console.print(f"Total overdue: {pagination['total']}")


@app.command("queue")
def cli_queue(book_id: int = typer.Argument(..., help="Book id")):
    """Show the reservation queue of a book."""
    orch = _orchestrator()
    try:
        line = orch.queue(book_id)
    except CirculationError as e:
        _fail(e)
    if not line:
        console.print(f"No active reservations for book {book_id}.")
        return
    table = Table(title=f"Reservation queue for book {book_id}")
    table.add_column("Position", justify="right")
    table.add_column("Reservation", justify="right")
    table.add_column("Borrower", justify="right")
    table.add_column("Expires")
    table.add_column("Notified")
    for reservation in line:
        table.add_row(
            str(reservation.priority),
            str(reservation.id),
            str(reservation.borrower_id),
            reservation.expiry_date.date().isoformat(),
            "yes" if reservation.notification_sent else "no",
        )
    console.print(table)


@app.command("outstanding")
def cli_outstanding(member_id: int = typer.Argument(..., help="Member id")):
    """Show a member's unpaid fines and the total owed."""
    orch = _orchestrator()
    try:
        orch.get_member(member_id)
        fines, total = orch.outstanding(member_id)
    except CirculationError as e:
        _fail(e)
    if not fines:
        console.print(f"Member {member_id} has no outstanding fines.")
        return
    table = Table(title=f"Outstanding fines for member {member_id}")
    table.add_column("Fine", justify="right")
    table.add_column("Loan", justify="right")
    table.add_column("Reason")
    table.add_column("Amount", justify="right")
    for fine in fines:
        table.add_row(str(fine.id), str(fine.loan_id), fine.reason, str(fine.amount))
    console.print(table)
    console.print(f"Total outstanding: {total} ({len(fines)} fines)")


@app.command("remind")
def cli_remind(
    days: int = typer.Option(settings.reminder_days_ahead, "--days", "-d", min=0,
                             help="Remind about loans due within this many days"),
):
    """Send due-soon and overdue reminders."""
    orch = _orchestrator()
    try:
        counts = orch.send_due_reminders(days_ahead=days)
    finally:
        orch.notifier.close()
    console.print(f"Reminders sent: {counts['due_soon']} due soon, {counts['overdue']} overdue")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    console.print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "circulation.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
