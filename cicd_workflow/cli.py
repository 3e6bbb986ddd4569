"""Main CLI entry point for CI/CD workflow submission."""

import os
from dataclasses import replace

import click
from kubernetes import client
from rich.console import Console
from rich.table import Table

from cicd_workflow import __version__
from cicd_workflow.cluster import ClusterConfigResolver
from cicd_workflow.config import Config, get_config
from cicd_workflow.error_handlers import handle_cli_errors, parse_labels
from cicd_workflow.exceptions import ConfigurationError, WorkflowExecutorNotFoundError
from cicd_workflow.executors import render_argo_workflow, render_job, serialize
from cicd_workflow.formatters import Formatters
from cicd_workflow.logging import bind_context, clear_context, configure_logging, get_logger
from cicd_workflow.models import WorkflowExecutorType, enum_value
from cicd_workflow.stores import InMemoryAppConfigStore, InMemoryGlobalCmCsStore, SubmissionFile
from cicd_workflow.workflow_client import WorkflowClient
from cicd_workflow.workflow_service import CommonWorkflowService

console = Console()
logger = get_logger(__name__)

# Keys shown by `config show` and accepted by `config get/set`
SETTINGS_KEYS = list(Config.DEFAULT_CONFIG)


def _resolver(ctx) -> ClusterConfigResolver:
    return ClusterConfigResolver(kubeconfig=ctx.obj.get("kubeconfig"), context=ctx.obj.get("context"))


def _load_submission(ctx, submission_file: str) -> SubmissionFile:
    submission = SubmissionFile.load(submission_file)
    if not submission.request.namespace:
        submission.request = replace(submission.request, namespace=ctx.obj["config"].namespace)
    clear_context()
    bind_context(
        workflow_id=submission.request.workflow_id,
        pipeline_id=submission.request.pipeline_id,
        pipeline_type="CI" if submission.is_ci else "CD",
    )
    return submission


def _service(ctx, submission: SubmissionFile = None, in_cluster_config=None) -> CommonWorkflowService:
    config = ctx.obj["config"]
    if submission is None:
        global_store, app_store = InMemoryGlobalCmCsStore(), InMemoryAppConfigStore()
    else:
        global_store, app_store = submission.global_cm_cs_store(), submission.app_config_store()
    return CommonWorkflowService(
        config=config.ci_cd_config(),
        global_cm_cs_store=global_store,
        app_config_store=app_store,
        cluster_resolver=_resolver(ctx),
        in_cluster_config=in_cluster_config,
    )


@click.group()
@click.version_option(version=__version__, prog_name="cicd-workflow")
@click.option(
    "--kubeconfig",
    envvar="KUBECONFIG",
    help="Path to kubeconfig file (defaults to $KUBECONFIG or ~/.kube/config)",
    type=click.Path(exists=True)
)
@click.option(
    "--context",
    help="Kubernetes context to use (defaults to current context)"
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (defaults to the log_level setting)"
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Emit JSON log lines instead of console output"
)
@click.pass_context
def cli(ctx, kubeconfig, context, log_level, log_json):
    """cicd-workflow - Assemble and submit CI/CD workflows to Kubernetes.

    A submission file describes one pipeline stage (request, pipeline,
    environment, app configmaps/secrets and global configs). The tool turns
    it into an Argo Workflow or a Kubernetes Job and submits it.

    Command Hierarchy:

      render                     Assemble a submission without submitting it

      submit                     Assemble and submit a submission

      workflows list             List submitted workflows

      workflows status           Get workflow status

      workflows delete           Delete a workflow

      workflows terminate        Stop a running workflow

      config                     Manage CLI configuration

    Examples:

      # Preview the Argo Workflow of a CD stage
      cicd-workflow render cd-pre.yaml

      # Submit it
      cicd-workflow submit cd-pre.yaml

      # Monitor workflows
      cicd-workflow workflows list -l devtron.ai/workflow-purpose=cd
    """
    ctx.ensure_object(dict)

    try:
        config = get_config()
    except ConfigurationError as e:
        raise click.ClickException(e.message)

    configure_logging(
        json_format=config.get("log_json", False) if log_json is None else log_json,
        level=log_level or config.get("log_level", "INFO"),
    )

    # Command-line options override config file
    ctx.obj["kubeconfig"] = kubeconfig or config.kubeconfig
    ctx.obj["context"] = context or config.cluster_context
    ctx.obj["config"] = config


@cli.command()
@click.argument("submission_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output",
    "-o",
    type=click.Choice(["yaml", "json", "table"]),
    help="Output format (defaults to the output_format setting)"
)
@click.pass_context
@handle_cli_errors
def render(ctx, submission_file: str, output: str):
    """
    Assemble a submission and print the resulting workflow without submitting it.

    The manifest printed depends on the request's workflowExecutor: an Argo
    Workflow for AWF, a batch/v1 Job for SYSTEM. No cluster access is needed
    except to resolve the connection of external runs.

    Examples:

      cicd-workflow render ci-build.yaml

      cicd-workflow render cd-pre.yaml -o table
    """
    output_format = output or ctx.obj["config"].output_format
    submission = _load_submission(ctx, submission_file)

    # rendering never talks to the control cluster
    service = _service(ctx, submission, in_cluster_config=client.Configuration())
    template = service.build_workflow_template(
        submission.request,
        submission.pipeline,
        submission.environment,
        submission.app_labels,
        submission.is_job,
        submission.is_ci,
    )

    if output_format == "table":
        console.print(Formatters.format_template_summary(template))
        return

    executor_type = enum_value(submission.request.workflow_executor)
    if executor_type == WorkflowExecutorType.ARGO_WORKFLOW.value:
        manifest = render_argo_workflow(template)
    elif executor_type == WorkflowExecutorType.SYSTEM.value:
        manifest = serialize(render_job(template))
    else:
        raise WorkflowExecutorNotFoundError(executor_type)
    logger.debug("template_rendered", executor=executor_type, output=output_format)
    click.echo(Formatters.format_manifest(manifest, output_format))


@cli.command()
@click.argument("submission_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
@handle_cli_errors
def submit(ctx, submission_file: str):
    """
    Assemble a submission and submit it with the requested executor.

    Prerequisites:
    - kubectl configured with cluster access
    - Argo Workflows installed in the cluster (for workflowExecutor AWF)

    Examples:

      cicd-workflow submit ci-build.yaml
    """
    submission = _load_submission(ctx, submission_file)
    service = _service(ctx, submission)

    with console.status("[bold yellow]Submitting workflow...[/bold yellow]"):
        created = service.submit_workflow(
            submission.request,
            submission.pipeline,
            submission.environment,
            submission.app_labels,
            submission.is_job,
            submission.is_ci,
        )

    Formatters.print_success(f"Submitted {created['kind']} '{created['name']}' in namespace '{created['namespace']}'")
    if created["kind"] == "Workflow":
        console.print("\n[bold cyan]Next Steps:[/bold cyan]")
        console.print(f"• Check status: [bold]cicd-workflow workflows status {created['name']} -n {created['namespace']}[/bold]\n")


@cli.group()
@click.option(
    "--namespace",
    "-n",
    envvar="ARGO_NAMESPACE",
    help="Kubernetes namespace of the workflows (can also be set via ARGO_NAMESPACE env var or config file)"
)
@click.pass_context
def workflows(ctx, namespace):
    """Inspect and manage submitted workflows."""
    config = ctx.obj.get("config")
    ctx.obj["workflows_namespace"] = namespace or (config.namespace if config else "argo")


def _workflow_client(ctx) -> WorkflowClient:
    return WorkflowClient(
        namespace=ctx.obj["workflows_namespace"],
        cluster_config=_resolver(ctx).get_in_cluster_config(),
    )


@workflows.command("list")
@click.option(
    "--label",
    "-l",
    multiple=True,
    help="Filter by label (format: key=value). Can be specified multiple times."
)
@click.pass_context
@handle_cli_errors
def list_workflows(ctx, label: tuple):
    """
    List workflows in the namespace with their status.

    Examples:

      cicd-workflow workflows list

      cicd-workflow workflows list -l devtron.ai/workflow-purpose=ci
    """
    namespace = ctx.obj["workflows_namespace"]
    labels = parse_labels(label)

    with console.status(f"[bold yellow]Retrieving workflows from namespace '{namespace}'...[/bold yellow]"):
        items = _workflow_client(ctx).list_workflows(labels=labels or None)

    if not items:
        Formatters.print_warning(f"No workflows found in namespace '{namespace}'")
        return

    console.print(Formatters.format_workflow_list(items))
    filter_info = ""
    if labels:
        filter_info = f" (filtered by: {', '.join([f'{k}={v}' for k, v in labels.items()])})"
    console.print(f"\n[dim]Found {len(items)} workflow(s) in namespace '{namespace}'{filter_info}[/dim]\n")


@workflows.command("status")
@click.argument("workflow_name")
@click.pass_context
@handle_cli_errors
def workflow_status(ctx, workflow_name: str):
    """Display detailed status for a specific workflow."""
    with console.status(f"[bold yellow]Fetching status for workflow '{workflow_name}'...[/bold yellow]"):
        status = _workflow_client(ctx).get_workflow_status(workflow_name)

    console.print(Formatters.format_workflow_status(status))
    if status.phase in ["Running", "Pending"]:
        console.print(f"• Stop it: [bold]cicd-workflow workflows terminate {workflow_name}[/bold]\n")


@workflows.command("delete")
@click.argument("workflow_name")
@click.option(
    "--retain-logs",
    is_flag=True,
    help="Retain workflow pods to preserve logs after deletion"
)
@click.option(
    "--yes",
    "-y",
    is_flag=True,
    help="Skip confirmation prompt"
)
@click.pass_context
@handle_cli_errors
def delete_workflow(ctx, workflow_name: str, retain_logs: bool, yes: bool):
    """
    Delete a workflow from the cluster.

    By default, associated pods are deleted. Use --retain-logs to keep pods
    and preserve logs for troubleshooting.
    """
    namespace = ctx.obj["workflows_namespace"]
    if not yes:
        if not click.confirm(f"Delete workflow '{workflow_name}' from namespace '{namespace}'?", default=False):
            console.print("\n[dim]Deletion cancelled[/dim]\n")
            return

    _workflow_client(ctx).delete_workflow(workflow_name, delete_pods=not retain_logs)
    Formatters.print_success(f"Deleted workflow '{workflow_name}'")


@workflows.command("terminate")
@click.argument("workflow_name")
@click.option(
    "--executor",
    "-e",
    type=click.Choice([t.value for t in WorkflowExecutorType]),
    default=WorkflowExecutorType.ARGO_WORKFLOW.value,
    show_default=True,
    help="Executor that started the workflow"
)
@click.pass_context
@handle_cli_errors
def terminate_workflow(ctx, workflow_name: str, executor: str):
    """
    Stop a running workflow.

    Argo Workflows are shut down in place; SYSTEM workflows (Jobs) are deleted.
    """
    namespace = ctx.obj["workflows_namespace"]
    _service(ctx).terminate_workflow(executor, workflow_name, namespace)
    Formatters.print_success(f"Terminated workflow '{workflow_name}'")


@cli.group()
def config():
    """Manage CLI configuration.

    Configuration is stored in ~/.cicd-workflow/config.yaml and holds the
    defaults of the CLI (namespace, cluster context, output format) and the
    platform settings used to assemble workflows (service accounts, taints,
    resource limits, log storage).

    Configuration precedence (highest to lowest):
    1. Command-line options
    2. Environment variables
    3. Configuration file
    4. Built-in defaults
    """
    pass


@config.command("init")
def config_init():
    """Initialize configuration file with default values.

    If the file already exists, it will not be overwritten.
    """
    config_obj = get_config()
    config_path = config_obj.config_path

    if config_path.exists():
        console.print(f"\n[bold yellow]Configuration file already exists:[/bold yellow] {config_path}\n")
        console.print("Use [bold]cicd-workflow config set[/bold] to modify values\n")
        return

    try:
        config_obj.create_default_config()
    except OSError as e:
        raise click.ClickException(f"Configuration initialization failed: {str(e)}")
    console.print(f"\n[bold green]✓ Configuration file created:[/bold green] {config_path}\n")


@config.command("show")
def config_show():
    """Display the effective configuration and the environment variables overriding it."""
    config_obj = get_config()
    config_path = config_obj.config_path

    console.print(f"\n[bold cyan]Configuration File:[/bold cyan] {config_path}")
    if not config_path.exists():
        console.print("[bold yellow]Status:[/bold yellow] Not initialized")
    else:
        console.print("[bold green]Status:[/bold green] Initialized")

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Key", style="white")
    table.add_column("Value")
    table.add_column("Environment Variable", style="dim")
    for key in SETTINGS_KEYS:
        value = config_obj.get(key)
        env_var = Config.ENV_VARS.get(key, "")
        if env_var and os.getenv(env_var):
            env_var = f"{env_var} (set)"
        if "secret" in key and value:
            value = "********"
        table.add_row(key, "[dim]Not set[/dim]" if value in (None, "") else f"[bold]{value}[/bold]", env_var)
    console.print(table)
    console.print()


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value and save it to the configuration file.

    Examples:

      cicd-workflow config set namespace devtron-ci

      cicd-workflow config set ci_limit_cpu 2

      cicd-workflow config set node_label purpose=ci,team=build
    """
    config_obj = get_config()

    if key not in SETTINGS_KEYS:
        console.print(f"\n[bold red]✗ Invalid configuration key:[/bold red] {key}\n")
        console.print(f"[bold cyan]Valid keys:[/bold cyan] {', '.join(SETTINGS_KEYS)}\n")
        raise click.ClickException(f"Invalid configuration key: {key}")

    if key == "output_format" and value not in ["table", "json", "yaml"]:
        console.print(f"\n[bold red]✗ Invalid output format:[/bold red] {value}\n")
        console.print("[bold cyan]Valid formats:[/bold cyan] table, json, yaml\n")
        raise click.ClickException(f"Invalid output format: {value}")

    try:
        config_obj.set(key, value)
        config_obj.save()
    except ConfigurationError as e:
        raise click.ClickException(e.message)
    except OSError as e:
        raise click.ClickException(f"Configuration update failed: {str(e)}")

    console.print("\n[bold green]✓ Configuration updated[/bold green]\n")
    console.print(f"  {key}: [bold]{config_obj.get(key)}[/bold]")
    console.print(f"\n[dim]Configuration saved to: {config_obj.config_path}[/dim]\n")


@config.command("get")
@click.argument("key")
def config_get(key: str):
    """Get a configuration value."""
    config_obj = get_config()

    if key not in SETTINGS_KEYS:
        console.print(f"\n[bold red]✗ Invalid configuration key:[/bold red] {key}\n")
        console.print(f"[bold cyan]Valid keys:[/bold cyan] {', '.join(SETTINGS_KEYS)}\n")
        raise click.ClickException(f"Invalid configuration key: {key}")

    value = config_obj.get(key)
    if value is None:
        console.print(f"\n{key}: [dim]Not set[/dim]\n")
    else:
        console.print(f"\n{key}: [bold]{value}[/bold]\n")


if __name__ == "__main__":
    cli()
