from pathlib import Path
from typing import Optional, Tuple

import click
from pydantic import ValidationError
from rich.table import Column, Table, box

from .. import terminal
from ..config import PipelineInputs
from ..exceptions import ConfigurationError
from ..models.config import Stage, build_meta_config, from_meta_config, load_meta_config
from ..worker.pipeline import (
    ProvisioningWorkflow,
    RollbackPolicy,
    WorkflowResult,
    publish_output,
)
from .extraclick import (
    ClickCommonGroup,
    build_workflow,
    check_sibling_environments,
    confirm_or_exit,
    handle_errors,
    pass_workflow,
)

rollback_option = click.option(
    "--rollback",
    type=click.Choice([p.value for p in RollbackPolicy]),
    default=RollbackPolicy.MANUAL.value,
    help="What to do with resources of a failed run.",
)


@click.group(cls=ClickCommonGroup)
def common():
    pass


@common.command(
    help="""
    Prepare an environment.

    Creates the remote state backend, synthesizes the stacks, runs terraform
    init for every stage and registers the database chart repository.
    """,
    epilog="""
    Examples:

      {cli_name} init -f environments/dev.yaml
    """,
)
@pass_workflow
def init(workflow: ProvisioningWorkflow):
    terminal.header(f"Initializing {workflow.infra.env_prefix}")
    workflow.init()
    terminal.success("Initialized")


@common.command(
    help="Show pending changes per stage.",
    epilog="""
    Examples:

      {cli_name} plan -f environments/dev.yaml
    """,
)
@pass_workflow
def plan(workflow: ProvisioningWorkflow):
    results = workflow.plan()

    table = Table(
        Column("Stage"),
        Column("Add", justify="right"),
        Column("Change", justify="right"),
        Column("Remove", justify="right"),
        Column("Status"),
        box=box.SIMPLE,
    )

    failed = False
    for stage, result in results.items():
        if not result.success:
            failed = True
            table.add_row(stage.value, "-", "-", "-", f"[red]error: {result.error}[/red]")
            continue

        changes = result.changes
        status = "converged" if result.converged else "changes pending"
        table.add_row(
            stage.value, str(changes.add), str(changes.change), str(changes.remove), status
        )

    terminal.print(table)

    if failed:
        terminal.error("Plan failed")


def _report(result: WorkflowResult, parameter_file: Optional[Path] = None) -> None:
    if result.success:
        for key, value in result.outputs.items():
            terminal.detail(f"{key}: {value}", dim=False)
        terminal.success(f"Run {result.run_id} done")
        return

    terminal.detail(f"Run {result.run_id} failed")
    if result.completed_stages:
        terminal.detail(f"Completed stages: {', '.join(result.completed_stages)}")

    if result.rollback is not None:
        rolled_back = ", ".join(result.rollback.get("rolled_back", [])) or "none"
        terminal.warn(f"Rolled back: {rolled_back}")
        if "rollback_error" in result.rollback:
            terminal.warn(f"Rollback stopped at {result.rollback['rollback_error']}")
    elif result.completed_stages:
        target = f"-f {parameter_file}" if parameter_file else "-f <parameter file>"
        terminal.warn(
            f"Resources were left in place. Fix the cause and re-run, "
            f"or remove them with: envstack destroy {target}"
        )

    terminal.error(f"{type(result.error).__name__}: {result.error}")


@common.command(
    help="""
    Converge an environment.

    Without --stage, runs network, cluster and database in order while
    holding the environment lease, then merges cluster access into the local
    kubeconfig.
    """,
    epilog="""
    Examples:

      # Full run
      {cli_name} apply -f environments/dev.yaml

      # Network and cluster only, tearing down on failure
      {cli_name} apply -f environments/dev.yaml --stage network --stage cluster --rollback destroy
    """,
)
@click.option(
    "--stage",
    "stages",
    type=click.Choice([s.value for s in Stage]),
    multiple=True,
    help="Stage to apply. Can be repeated.",
)
@rollback_option
@pass_workflow
def apply(workflow: ProvisioningWorkflow, stages: Tuple[str, ...], rollback: str):
    terminal.header(f"Applying {workflow.infra.env_prefix}", workflow.infra.cluster_name)

    result = workflow.apply(
        stages=[Stage(s) for s in stages] or None,
        rollback=RollbackPolicy(rollback),
    )
    _report(result, click.get_current_context().params.get("parameter_file"))


@common.command(
    help="Tear down the database, then the cluster, then the network.",
    epilog="""
    Examples:

      {cli_name} destroy -f environments/dev.yaml --yes
    """,
)
@click.option("--yes", "-y", is_flag=True, default=False, help="Skip the confirmation prompt.")
@pass_workflow
def destroy(workflow: ProvisioningWorkflow, yes: bool):
    infra = workflow.infra
    confirm_or_exit(
        f"Destroy environment {infra.env_prefix} (cluster {infra.cluster_name}, {infra.region})?",
        yes,
    )

    terminal.header(f"Destroying {infra.env_prefix}")
    result = workflow.destroy()

    if not result.success:
        if result.completed_stages:
            terminal.detail(f"Removed stages: {', '.join(result.completed_stages)}")
        terminal.error(f"{type(result.error).__name__}: {result.error}")

    terminal.success(f"Environment {infra.env_prefix} destroyed")


@common.command(
    help="""
    CI entry point.

    Reads ENV_PREFIX, K8S_VERSION, CLUSTER_NAME and REGION, plus
    AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY, from the environment. An
    optional parameter file supplies everything else; without one,
    STATE_BUCKET must be set. Publishes cluster_endpoint as an output
    variable.
    """,
    epilog="""
    Examples:

      ENV_PREFIX=dev K8S_VERSION=1.28 CLUSTER_NAME=my-test-cluster REGION=eu-west-2 \\
        STATE_BUCKET=acme-envstack-state {cli_name} pipeline
    """,
)
@click.option(
    "-f",
    "--file",
    "parameter_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=False,
    help="Parameter file for settings beyond the four environment parameters.",
)
@rollback_option
@handle_errors
def pipeline(parameter_file: Optional[Path], rollback: str):
    try:
        inputs = PipelineInputs()
    except ValidationError as e:
        missing = sorted({str(err["loc"][0]) for err in e.errors()})
        raise ConfigurationError(
            f"missing or invalid pipeline variables: {', '.join(missing)}"
        ) from e

    if parameter_file is not None:
        meta = load_meta_config(parameter_file, overrides=inputs.parameters())
    elif inputs.state_bucket:
        meta = build_meta_config(
            {"parameters": inputs.parameters(), "state": {"bucket": inputs.state_bucket}}
        )
    else:
        raise ConfigurationError("STATE_BUCKET is required when no parameter file is given")

    infra = from_meta_config(meta)
    if parameter_file is not None:
        check_sibling_environments(parameter_file, infra)

    workflow = build_workflow(infra, trigger="pipeline")

    terminal.header(f"Pipeline run for {inputs.env_prefix}", inputs.cluster_name)
    workflow.init()
    result = workflow.apply(rollback=RollbackPolicy(rollback))

    if result.success:
        publish_output("cluster_endpoint", result.outputs.get("cluster_endpoint", ""))

    _report(result, parameter_file)
