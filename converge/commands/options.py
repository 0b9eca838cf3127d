"""Options shared by every command that loads a configuration directory."""

import click

from converge.workspace import Workspace


def workspace_options(func):
    """Add --dir, --var and --var-file to a command."""
    func = click.option(
        "--var-file",
        "var_files",
        multiple=True,
        type=click.Path(exists=True, dir_okay=False),
        help="YAML/JSON file of variable values (repeatable)",
    )(func)
    func = click.option(
        "--var",
        "var_assignments",
        multiple=True,
        metavar="NAME=VALUE",
        help="Set a variable (repeatable, highest priority)",
    )(func)
    func = click.option(
        "--dir",
        "config_dir",
        default=".",
        type=click.Path(exists=True, file_okay=False),
        help="Configuration directory",
    )(func)
    return func


def load_workspace(config_dir: str, var_files=(), var_assignments=()) -> Workspace:
    return Workspace(config_dir, var_files=var_files, var_assignments=var_assignments)
