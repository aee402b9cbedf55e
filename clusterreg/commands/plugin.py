"""External CLI plugins.

A command the CLI doesn't know, e.g. ``clusterreg foo bar``, is looked up as
an executable named ``clusterreg-foo-bar`` (then ``clusterreg-foo``) on PATH
and run with the remaining arguments.
"""
import os
import shutil
import subprocess
from typing import Callable, List, Optional, Sequence, Tuple

import click
import typer

from clusterreg.config import Config
from clusterreg.logging import setup_logger

logger = setup_logger(__name__)

app = typer.Typer(help="Discover external CLI plugins.")


class PluginError(Exception):
    pass


class PluginHandler:
    """Finds and runs plugin executables for unknown commands."""

    def __init__(self, valid_prefixes: Sequence[str],
                 look_path: Callable[[str], Optional[str]] = shutil.which,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.valid_prefixes = list(valid_prefixes)
        self._look_path = look_path
        self._run = run

    def handle_command_execution_error(self, err: click.ClickException, args: List[str]) -> int:
        """Run a plugin for an unknown command, or re-raise ``err``.

        Returns the plugin's exit code.
        """
        if not (isinstance(err, click.UsageError) and "No such command" in err.format_message()):
            raise err
        logger.debug("command does not exist, looking for a plugin...")
        path, code = self.handle_plugin_command(args, min_args=1)
        if path is None:
            raise err
        return code

    def handle_plugin_command(self, cmd_args: List[str], min_args: int = 1) -> Tuple[Optional[str], int]:
        remaining = []
        for arg in cmd_args:
            if arg.startswith("-"):
                break
            remaining.append(arg.replace("-", "_"))

        if not remaining:
            raise PluginError(f"flags cannot be placed before plugin name: {cmd_args[0]}")

        # longest matching name wins
        found = None
        while remaining:
            found = self.look_for_plugin("-".join(remaining))
            if found:
                break
            remaining = remaining[:-1]
            if len(remaining) < min_args:
                break

        if not found:
            return None, 0
        return found, self.execute_plugin(found, cmd_args[len(remaining):])

    def look_for_plugin(self, filename: str) -> Optional[str]:
        for prefix in self.valid_prefixes:
            path = self._look_path(f"{prefix}-{filename}")
            if path:
                return path
        return None

    def execute_plugin(self, path: str, args: List[str]) -> int:
        logger.debug(f"executing plugin {path} {' '.join(args)}")
        result = self._run([path, *args], env=os.environ.copy())
        return result.returncode

    def list_plugins(self) -> List[str]:
        """Plugin executables found on PATH, first match per name."""
        seen = {}
        for directory in os.environ.get("PATH", "").split(os.pathsep):
            if not os.path.isdir(directory):
                continue
            for entry in sorted(os.listdir(directory)):
                full = os.path.join(directory, entry)
                if entry in seen or not os.access(full, os.X_OK) or os.path.isdir(full):
                    continue
                if any(entry.startswith(f"{prefix}-") for prefix in self.valid_prefixes):
                    seen[entry] = full
        return list(seen.values())


@app.command("list")
def plugin_list():
    """List CLI plugins found on PATH."""
    plugins = PluginHandler(Config.PLUGIN_PREFIXES).list_plugins()
    if not plugins:
        typer.echo("No plugins found.")
        return
    for path in plugins:
        typer.echo(f"🔌 {path}")
