import shutil
from types import ModuleType
from typing import Any, Optional

import click

from ..config import Settings, settings as default_settings
from ..logging import setup_logging
from . import cluster, environment, runs
from .extraclick import CLICK_CONTEXT_SETTINGS, ClickCommonGroup, CommandGroupCollection

click.formatting.FORCED_WIDTH = shutil.get_terminal_size().columns


class CLI:
    """
    The CLI application.

    This is used to dynamically register commands. Commands are of type
    click.Group and are named either "common" or "management".
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        context_settings: Optional[dict] = None,
    ) -> None:
        self.settings = default_settings if settings is None else settings

        if context_settings is None:
            context_settings = CLICK_CONTEXT_SETTINGS

        self.management_group = ClickCommonGroup()
        self.common_group = CommandGroupCollection(
            name="envstack",
            sources=[self.management_group],
            context_settings=context_settings,
        )

    def __call__(self, **kwargs) -> None:
        self.common_group.main(prog_name="envstack", **kwargs)

    def register(self, module: ModuleType) -> None:
        if hasattr(module, "common"):
            self.common_group.add_command(module.common)
        if hasattr(module, "management"):
            self.management_group.add_command(module.management)

    def load_version(self, package_name: Optional[str] = None):
        """
        Adds a version parameter to the top-level command.

        Args:
            package_name: Name of Python package. Defaults to None.
        """
        option = click.version_option(package_name=package_name or "envstack")

        for i, param in enumerate(self.common_group.params):
            if param.name == "version":
                self.common_group.params.pop(i)
                break

        self.common_group = option(self.common_group)


def load_cli(**kwargs: Any) -> CLI:
    cli = CLI(**kwargs)
    cli.register(environment)
    cli.register(cluster)
    cli.register(runs)

    cli.load_version()

    return cli


def start():
    """Used as the console script entrypoint."""
    setup_logging(default_settings.log_level, default_settings.log_format)

    cli = load_cli()
    cli()
