from pathlib import Path
from typing import Dict, Optional

import click
from rich.table import Column, Table, box

from .. import terminal
from ..exceptions import ConfigurationError
from ..worker.bootstrap import update_local_kubeconfig
from ..worker.profiles import list_fargate_profiles, selector_matches
from .extraclick import ClickCommonGroup, handle_errors, labels_callback, load_infra


@click.group(cls=ClickCommonGroup)
def common():
    pass


@common.command(
    help="Merge cluster access into the local kubeconfig.",
    epilog="""
    Examples:

      {cli_name} kubeconfig -f environments/dev.yaml

      {cli_name} kubeconfig --name my-test-cluster --region eu-west-2
    """,
)
@click.option(
    "-f",
    "--file",
    "parameter_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Environment parameter file.",
)
@click.option("--name", "cluster_name", help="Cluster name.")
@click.option("--region", help="AWS region.")
@click.option("--alias", help="Context name in the kubeconfig.")
@handle_errors
def kubeconfig(
    parameter_file: Optional[Path],
    cluster_name: Optional[str],
    region: Optional[str],
    alias: Optional[str],
):
    if parameter_file is not None:
        infra = load_infra(parameter_file)
        cluster_name, region = infra.cluster_name, infra.region
    elif not (cluster_name and region):
        raise ConfigurationError("pass either --file or both --name and --region")

    message = update_local_kubeconfig(cluster_name, region, alias=alias)
    if message:
        terminal.detail(message)
    terminal.success(f"kubectl now targets {cluster_name}")


@common.command(
    name="fargate-profiles",
    help="""
    List the Fargate profiles of a cluster.

    With --check, reports whether a pod in NAMESPACE with the given labels
    would be scheduled on Fargate. Exits 1 when no profile matches.
    """,
    epilog="""
    Examples:

      {cli_name} fargate-profiles --cluster-name my-test-cluster --region eu-west-2

      {cli_name} fargate-profiles --cluster-name my-test-cluster --region eu-west-2 \\
        --check app --label tier=web
    """,
)
@click.option("--cluster-name", required=True, help="Cluster name.")
@click.option("--region", required=True, help="AWS region.")
@click.option("--check", "namespace", help="Namespace of the workload to check.")
@click.option(
    "--label",
    "labels",
    multiple=True,
    callback=labels_callback,
    help="Workload label as key=value. Can be repeated.",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON.")
@handle_errors
def fargate_profiles(
    cluster_name: str,
    region: str,
    namespace: Optional[str],
    labels: Dict[str, str],
    as_json: bool,
):
    profiles = list_fargate_profiles(cluster_name, region)

    if as_json:
        terminal.print_json([p.to_dict() for p in profiles])
    else:
        table = Table(
            Column("Name"),
            Column("Status"),
            Column("Namespace"),
            Column("Labels"),
            box=box.SIMPLE,
        )
        for profile in profiles:
            for selector in profile.selectors:
                selector_labels = ", ".join(f"{k}={v}" for k, v in selector.labels.items())
                table.add_row(profile.name, profile.status, selector.namespace, selector_labels)

        table.add_section()
        table.add_row(f"[bold]{len(profiles)} items")
        terminal.print(table)

    if namespace is None:
        return

    for profile in profiles:
        if selector_matches(profile.selectors, namespace, labels):
            terminal.success(f"Workload in {namespace} is scheduled on Fargate profile {profile.name}")
            return

    terminal.error(f"No Fargate profile matches namespace {namespace} with labels {labels or {}}")
