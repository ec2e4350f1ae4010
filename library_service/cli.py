import logging
from dataclasses import replace
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from library_service.app import LibraryApp
from library_service.config import settings
from library_service.errors import LibraryError
from library_service import server

APP_NAME = "Library Service CLI"

console = Console()

app = typer.Typer(help=APP_NAME)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _build_app(db: Optional[str]) -> LibraryApp:
    configured = replace(settings, db_file=db) if db else settings
    try:
        return LibraryApp(configured).initialize()
    except LibraryError as e:
        console.print(f"[bold red]Could not open the library database: {e.message}[/]")
        raise typer.Exit(code=1)


DbOption = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)")


@app.callback()
def _global_options(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level"),
):
    """Library management service."""
    _configure_logging(log_level)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Interface to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Port to listen on"),
    db: Optional[str] = DbOption,
):
    """Initialize the database and serve requests until interrupted."""
    library = _build_app(db)
    server.run(library, host, port)


@app.command("init-db")
def cli_init_db(db: Optional[str] = DbOption):
    """Create the schema and seed the admin account."""
    library = _build_app(db)
    console.print(f"Database initialized at {library.db.path}")


@app.command("users")
def cli_users(db: Optional[str] = DbOption):
    """List registered users."""
    library = _build_app(db)
    users = library.gateway.list_users()
    table = Table(title="Users", box=box.SIMPLE)
    for column in ("ID", "Username", "Email", "Role", "Created"):
        table.add_column(column)
    for user in users:
        table.add_row(str(user.id), user.username, user.email, user.role, user.created_at)
    console.print(table)


@app.command("books")
def cli_books(db: Optional[str] = DbOption):
    """List the catalogue with copy counts."""
    library = _build_app(db)
    books = library.gateway.list_books()
    if not books:
        console.print("No books in library.")
        return
    table = Table(title="Books", box=box.SIMPLE)
    for column in ("ID", "Title", "Author", "ISBN", "Available"):
        table.add_column(column)
    for book in books:
        table.add_row(
            str(book.id), book.title, book.author, book.isbn, f"{book.available_copies}/{book.total_copies}"
        )
    console.print(table)


@app.command("overdue")
def cli_overdue(db: Optional[str] = DbOption):
    """Mark past-due loans overdue and list them."""
    library = _build_app(db)
    records = library.engine.list_overdue()
    if not records:
        console.print("No overdue loans.")
        return
    table = Table(title="Overdue loans", box=box.SIMPLE)
    for column in ("Record", "User", "Title", "Due"):
        table.add_column(column)
    for record in records:
        table.add_row(str(record.id), record.username, record.title, record.due_date)
    console.print(table)


if __name__ == "__main__":
    app()
