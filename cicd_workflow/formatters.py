"""Output formatting and display utilities using rich library."""

import json
from datetime import datetime
from io import StringIO
from typing import Any, Dict, List, Optional

import yaml
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cicd_workflow.models import WorkflowStatus, WorkflowTemplate, _parse_time


def _buffered_console():
    buffer = StringIO()
    return Console(file=buffer, force_terminal=True, width=120), buffer


class Formatters:
    """Output formatters for CLI display."""

    @staticmethod
    def _get_phase_color(phase: str) -> str:
        """Get color for workflow phase.

        Args:
            phase: Workflow phase (Running, Succeeded, Failed, Error, Pending)

        Returns:
            Color name for rich formatting
        """
        phase_colors = {
            "Running": "blue",
            "Succeeded": "green",
            "Failed": "red",
            "Error": "red",
            "Pending": "yellow",
            "Skipped": "dim",
            "Omitted": "dim",
        }
        return phase_colors.get(phase, "white")

    @staticmethod
    def _get_phase_icon(phase: str) -> str:
        phase_icons = {
            "Running": "⏳",
            "Succeeded": "✓",
            "Failed": "✗",
            "Error": "✗",
            "Pending": "○",
            "Skipped": "⊘",
            "Omitted": "⊘",
        }
        return phase_icons.get(phase, "•")

    @staticmethod
    def _format_duration(started_at: Optional[datetime], finished_at: Optional[datetime] = None) -> str:
        """Format duration between start and finish times.

        Args:
            started_at: Start time (None if not started)
            finished_at: Finish time (None if still running)

        Returns:
            Formatted duration string
        """
        if started_at is None:
            return "N/A"
        if finished_at:
            duration = finished_at - started_at
        else:
            now = datetime.now(started_at.tzinfo) if started_at.tzinfo else datetime.now()
            duration = now - started_at

        total_seconds = int(duration.total_seconds())
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60

        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"

    @staticmethod
    def _format_time(value: Optional[datetime]) -> str:
        return value.strftime("%Y-%m-%d %H:%M:%S") if value else "N/A"

    @staticmethod
    def format_workflow_list(workflows: List[Dict]) -> str:
        """Format a list of workflows as a table.

        Args:
            workflows: List of workflow objects (dict format from K8s API)

        Returns:
            Formatted table string
        """
        console, buffer = _buffered_console()

        table = Table(
            title="Workflows",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan",
        )

        table.add_column("Name", style="white", no_wrap=True)
        table.add_column("Purpose", style="dim")
        table.add_column("Status", justify="center")
        table.add_column("Progress", justify="center")
        table.add_column("Started", style="dim")
        table.add_column("Duration", justify="right")

        for workflow in workflows:
            metadata = workflow.get("metadata", {})
            status = workflow.get("status") or {}

            phase = status.get("phase", "Unknown")
            try:
                started_at = _parse_time(status.get("startedAt"))
                finished_at = _parse_time(status.get("finishedAt"))
            except ValueError:
                started_at = finished_at = None

            color = Formatters._get_phase_color(phase)
            icon = Formatters._get_phase_icon(phase)

            table.add_row(
                metadata.get("name", "N/A"),
                (metadata.get("labels") or {}).get("devtron.ai/workflow-purpose", ""),
                Text(f"{icon} {phase}", style=color),
                status.get("progress", "0/0"),
                Formatters._format_time(started_at),
                Formatters._format_duration(started_at, finished_at),
            )

        if not workflows:
            table.add_row("No workflows found", "", "", "", "", "")

        console.print(table)
        return buffer.getvalue()

    @staticmethod
    def format_workflow_status(status: WorkflowStatus) -> str:
        """Format workflow status with progress indicators.

        Args:
            status: Workflow status object

        Returns:
            Formatted status string
        """
        console, buffer = _buffered_console()

        color = Formatters._get_phase_color(status.phase)
        icon = Formatters._get_phase_icon(status.phase)

        status_text = Text()
        status_text.append(f"{icon} ", style=color)
        status_text.append(f"Workflow: {status.name}\n", style="bold white")
        status_text.append(f"Namespace: {status.namespace}\n", style="dim")
        status_text.append("Status: ", style="dim")
        status_text.append(f"{status.phase}\n", style=f"bold {color}")
        status_text.append(f"Progress: {status.progress}\n", style="dim")
        status_text.append(f"Started: {Formatters._format_time(status.started_at)}\n", style="dim")
        if status.finished_at:
            status_text.append(f"Finished: {Formatters._format_time(status.finished_at)}\n", style="dim")
        status_text.append(
            f"Duration: {Formatters._format_duration(status.started_at, status.finished_at)}\n", style="dim"
        )
        if status.message:
            status_text.append(f"Message: {status.message}\n", style="yellow")

        console.print(Panel(status_text, title="Workflow Status", border_style=color))

        if status.nodes:
            table = Table(
                title="Workflow Steps",
                box=box.ROUNDED,
                show_header=True,
                header_style="bold cyan",
            )
            table.add_column("Step", style="white")
            table.add_column("Type", style="dim")
            table.add_column("Status", justify="center")
            table.add_column("Duration", justify="right")
            table.add_column("Message", style="dim")

            for node in status.nodes:
                node_color = Formatters._get_phase_color(node.phase)
                node_icon = Formatters._get_phase_icon(node.phase)
                # Truncate long messages
                message = node.message[:50] + "..." if len(node.message) > 50 else node.message
                table.add_row(
                    node.display_name,
                    node.type,
                    Text(f"{node_icon} {node.phase}", style=node_color),
                    Formatters._format_duration(node.started_at, node.finished_at),
                    message,
                )
            console.print(table)

        return buffer.getvalue()

    @staticmethod
    def format_template_summary(template: WorkflowTemplate) -> str:
        """Summarize an assembled workflow template as a table.

        Secret values are never shown, only secret names.
        """
        console, buffer = _buffered_console()

        table = Table(
            title=f"{template.workflow_type} Workflow Template",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Setting", style="white", no_wrap=True)
        table.add_column("Value", style="dim")

        container = template.containers[0]
        resources = container.resources
        rows = [
            ("Name prefix", template.workflow_name_prefix),
            ("Namespace", template.namespace),
            ("Image", container.image or "N/A"),
            ("Service account", template.service_account_name),
            ("External run", "yes" if template.is_ext_run else "no"),
            ("Node selector", ", ".join(f"{k}={v}" for k, v in template.node_selector.items()) or "none"),
            ("Tolerations", ", ".join(f"{t.key}={t.value}" for t in template.tolerations) or "none"),
            ("Limits", ", ".join(f"{k}={v}" for k, v in (resources.limits or {}).items())),
            ("Requests", ", ".join(f"{k}={v}" for k, v in (resources.requests or {}).items())),
            ("ConfigMaps", ", ".join(cm.name for cm in template.config_maps) or "none"),
            ("Secrets", ", ".join(secret.name for secret in template.secrets) or "none"),
            ("Volumes", ", ".join(volume.name for volume in template.volumes) or "none"),
            ("TTL", f"{template.ttl_value}s"),
            ("Active deadline", f"{template.active_deadline_seconds}s" if template.active_deadline_seconds else "none"),
            ("Archive logs", "yes" if template.archive_logs else "no"),
            ("Blob storage", template.cloud_storage_key if template.blob_storage_configured else "not configured"),
        ]
        if template.wf_controller_instance_id:
            rows.append(("Controller instance", template.wf_controller_instance_id))
        for setting, value in rows:
            table.add_row(setting, str(value))

        console.print(table)
        return buffer.getvalue()

    @staticmethod
    def format_manifest(manifest: Any, output_format: str = "yaml") -> str:
        """Dump a manifest as plain YAML or JSON, keeping key order."""
        if output_format == "json":
            return json.dumps(manifest, indent=2)
        return yaml.safe_dump(manifest, sort_keys=False, default_flow_style=False)

    @staticmethod
    def print_success(message: str) -> None:
        console = Console()
        console.print(f"[bold green]✓[/bold green] {message}")

    @staticmethod
    def print_warning(message: str) -> None:
        """Print a warning message.

        Args:
            message: Warning message to display
        """
        console = Console()
        console.print(f"[bold yellow]⚠[/bold yellow] {message}")
