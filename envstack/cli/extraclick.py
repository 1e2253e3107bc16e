import functools
import inspect
import sys
import textwrap
from gettext import gettext
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import click
import structlog

from .. import terminal
from ..config import settings
from ..exceptions import ConfigurationError, EnvstackError
from ..models.config import (
    InfraModel,
    ensure_distinct_state_keys,
    from_meta_config,
    load_meta_config,
)
from ..models.database import init_db
from ..worker.pipeline import ProvisioningWorkflow

logger = structlog.get_logger()

PARAMETER_FILE_SUFFIXES = (".yaml", ".yml", ".tfvars")

CLICK_CONTEXT_SETTINGS = dict(
    help_option_names=["-h", "--help"],
    show_default=True,
)

parameter_file_option = click.option(
    "-f",
    "--file",
    "parameter_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Environment parameter file (YAML or .tfvars).",
)


class EnvstackCommand(click.Command):
    def cli_name(self, ctx: click.Context) -> str:
        name, *_ = ctx.command_path.split()
        return name

    def format_epilog(self, ctx: click.Context, formatter: click.HelpFormatter):
        """
        Writes the epilog text to the formatter if it exists.
        """
        if not self.epilog:
            return

        name = self.cli_name(ctx)
        text = self.epilog.format(cli_name=name)
        text = textwrap.dedent(text)
        formatter.write(text)
        formatter.write("\n")

    def format_help_text(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """
        Writes the help text to the formatter if it exists.
        """
        if self.help is not None:
            # truncate the help text to the first form feed
            text = inspect.cleandoc(self.help).partition("\f")[0]
        else:
            text = ""

        if text:
            name = self.cli_name(ctx)
            text = text.format(cli_name=name)

            formatter.write_paragraph()

            with formatter.indentation():
                text = textwrap.indent(text, " " * formatter.current_indent)
                formatter.write(text)
                formatter.write("\n")


class ClickCommonGroup(click.Group):
    command_class = EnvstackCommand

    def list_commands(self, ctx) -> List[str]:
        return list(self.commands)


class ClickManagementGroup(click.Group):
    command_class = EnvstackCommand

    def list_commands(self, ctx) -> List[str]:
        return list(self.commands)


class CommandGroupCollection(click.CommandCollection):
    def add_command(self, cmd: click.Group):
        """
        Alias method so it looks like a group.
        """
        return self.add_source(cmd)

    @property
    def sources_map(self) -> Dict[str, click.Group]:
        """
        A dictionary representation of {"command name": click_group}.
        """
        r = {}
        for source in self.sources:
            if not isinstance(source, click.Group):
                continue
            for command in source.commands:
                r[command] = source

        return r

    def format_commands(self, ctx: click.Context, formatter: click.HelpFormatter) -> None:
        """
        Lists common commands first, then management groups.
        """
        commands: Dict[str, List[Tuple[str, click.Command]]] = {"common": [], "management": []}

        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue

            if isinstance(cmd, ClickManagementGroup):
                commands["management"].append((subcommand, cmd))
            else:
                commands["common"].append((subcommand, cmd))

        commands["management"].sort(key=lambda x: x[0])

        for cmdtype, cmds in commands.items():
            if not len(cmds):
                continue

            limit = formatter.width - 6 - max(len(cmd[0]) for cmd in cmds)
            rows = [(subcommand, cmd.get_short_help_str(limit)) for subcommand, cmd in cmds]

            with formatter.section(gettext(cmdtype.title() + " Commands")):
                formatter.write_dl(rows)

    def list_commands(self, ctx):
        sources = []
        for source in self.sources:
            sources.extend(source.list_commands(ctx))
        return sources


def handle_errors(func: Callable):
    """Print envstack errors in red and exit 1 instead of showing a traceback."""

    @functools.wraps(func)
    def decorator(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except EnvstackError as e:
            terminal.error(f"{type(e).__name__}: {e}")

    return decorator


def load_infra(parameter_file: Path, overrides: Optional[Dict[str, Any]] = None) -> InfraModel:
    return from_meta_config(load_meta_config(parameter_file, overrides))


def check_sibling_environments(parameter_file: Path, infra: InfraModel) -> None:
    """
    Reject ``infra`` if it shares a state key or lease with the environment of
    another parameter file in the same directory.

    Files that do not load as parameter files are skipped.

    Raises:
        ConfigurationError: On a collision, naming both files
    """
    target = parameter_file.resolve()

    for path in sorted(target.parent.iterdir()):
        if path.suffix not in PARAMETER_FILE_SUFFIXES or path.resolve() == target:
            continue

        try:
            other = load_infra(path)
        except EnvstackError as e:
            logger.debug("Skipping unreadable parameter file", path=str(path), error=str(e))
            continue

        try:
            ensure_distinct_state_keys([infra, other])
        except ConfigurationError as e:
            raise ConfigurationError(f"{parameter_file.name} collides with {path.name}: {e}") from e


def build_workflow(infra: InfraModel, trigger: str = "cli") -> ProvisioningWorkflow:
    return ProvisioningWorkflow(
        infra,
        settings,
        db=init_db(settings.database_url),
        trigger=trigger,
    )


def pass_workflow(func: Callable):
    """
    Decorator that loads ``--file`` and passes a ProvisioningWorkflow as the
    first argument.
    """

    @parameter_file_option
    @functools.wraps(func)
    @handle_errors
    def decorator(parameter_file: Path, *args, **kwargs):
        infra = load_infra(parameter_file)
        check_sibling_environments(parameter_file, infra)
        return func(build_workflow(infra), *args, **kwargs)

    return decorator


def labels_callback(
    ctx: click.Context,
    param: click.Option,
    values: Tuple[str, ...],
) -> Dict[str, str]:
    labels: Dict[str, str] = {}

    for value in values:
        key, sep, val = value.partition("=")
        if not sep or not key or not val:
            raise click.BadParameter("Label must be in the format key=value")
        labels[key] = val

    return labels


def confirm_or_exit(message: str, assume_yes: bool) -> None:
    if assume_yes:
        return
    if not sys.stdin.isatty():
        terminal.error("Refusing to continue without --yes in a non-interactive session")
    if not click.confirm(message, default=False, err=True):
        terminal.error("Aborted")
