"""
TaskBridge CLI: run and inspect the sync agent.

Each command group lives in its own module and is registered on the
main Click group here.

Entry point: taskbridge.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="taskbridge")
def main():
    """TaskBridge: keep OmniFocus and your remote projects in step."""


from .daemon import register_agent_commands
from .sync_cmd import register_sync_commands
from .pair import register_pair_commands

register_agent_commands(main)
register_sync_commands(main)
register_pair_commands(main)
