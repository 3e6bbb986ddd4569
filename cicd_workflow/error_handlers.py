"""Error handling utilities for CLI commands."""

from functools import wraps

import click
from rich.console import Console

from cicd_workflow.exceptions import CiCdWorkflowError
from cicd_workflow.logging import get_logger

console = Console(stderr=True)
logger = get_logger(__name__)


def handle_cli_errors(func):
    """Decorator to handle CLI errors with consistent formatting.

    This decorator catches all custom exceptions and formats them
    with error messages and troubleshooting guidance.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CiCdWorkflowError as e:
            logger.debug("command_failed", error_type=type(e).__name__, error=e.message)
            console.print("\n[bold red]✗ Error[/bold red]\n")
            console.print(f"[red]{e.message}[/red]\n")

            troubleshooting = e.get_troubleshooting_text()
            if troubleshooting:
                console.print(f"[bold yellow]{troubleshooting}[/bold yellow]\n")

            raise click.ClickException(e.message)

        except click.ClickException:
            # Re-raise Click exceptions (already formatted)
            raise

        except KeyboardInterrupt:
            console.print("\n\n[dim]Operation cancelled by user[/dim]\n")
            raise click.Abort()

        except Exception as e:
            logger.exception("command_crashed", error=str(e))
            console.print("\n[bold red]✗ Unexpected Error[/bold red]\n")
            console.print(f"[red]{str(e)}[/red]\n")
            console.print("[bold yellow]Troubleshooting:[/bold yellow]")
            console.print("• This is an unexpected error. Please report it if it persists.")
            console.print("• Run again with --log-level DEBUG for details.\n")
            raise click.ClickException(f"Unexpected error: {str(e)}")

    return wrapper


def parse_labels(label: tuple) -> dict:
    """Parse ``key=value`` label options, warning about and skipping malformed ones."""
    labels = {}
    for label_str in label:
        if "=" in label_str:
            key, value = label_str.split("=", 1)
            labels[key.strip()] = value.strip()
        else:
            console.print(f"[bold yellow]⚠ Warning:[/bold yellow] Ignoring invalid label format: {label_str}")
    return labels
