"""Tests for output formatting."""

from datetime import datetime, timedelta, timezone

import yaml

from cicd_workflow.formatters import Formatters


class TestFormatters:
    """Test cases for Formatters."""

    def test_format_duration(self):
        """Test human readable durations."""
        start = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert Formatters._format_duration(None) == "N/A"
        assert Formatters._format_duration(start, start + timedelta(seconds=42)) == "42s"
        assert Formatters._format_duration(start, start + timedelta(minutes=3, seconds=5)) == "3m 5s"
        assert Formatters._format_duration(start, start + timedelta(hours=2, minutes=1)) == "2h 1m 0s"

    def test_unknown_phase(self):
        """Test defaults for phases without a color or icon."""
        assert Formatters._get_phase_color("Unknown") == "white"
        assert Formatters._get_phase_icon("Unknown") == "•"

    def test_format_manifest_keeps_order(self):
        """Test that manifests are dumped in insertion order."""
        manifest = {"apiVersion": "argoproj.io/v1alpha1", "kind": "Workflow", "metadata": {"name": "wf"}}

        dumped = Formatters.format_manifest(manifest, "yaml")

        assert dumped.startswith("apiVersion: argoproj.io/v1alpha1\nkind: Workflow\n")
        assert yaml.safe_load(dumped) == manifest
        assert Formatters.format_manifest(manifest, "json").startswith('{\n  "apiVersion"')

    def test_format_workflow_list(self):
        """Test the workflow table."""
        output = Formatters.format_workflow_list([{
            "metadata": {"name": "cd-9-abcde", "labels": {"devtron.ai/workflow-purpose": "cd"}},
            "status": {"phase": "Failed", "startedAt": "bad-time"},
        }])

        assert "cd-9-abcde" in output
        assert "Failed" in output
