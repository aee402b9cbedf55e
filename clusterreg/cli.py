import logging
import sys
from typing import List, Optional

import click
import typer

from clusterreg.commands import cluster, plugin
from clusterreg.commands.plugin import PluginError, PluginHandler
from clusterreg.config import Config
from clusterreg.logging import quiet_noisy_loggers

app = typer.Typer()

# Global debug flag
debug_mode = False

# Configure logging
def setup_logging(debug: bool = False):
    """Configure logging based on debug mode."""
    log_level = logging.DEBUG if debug else Config.LOG_LEVEL
    logging.basicConfig(level=log_level, format=Config.LOG_FORMAT)
    # package loggers have their own handler; only their level follows --debug
    logging.getLogger("clusterreg").setLevel(log_level)
    if not debug:
        quiet_noisy_loggers()

# Add all command groups
app.add_typer(cluster.app, name="cluster")
app.add_typer(plugin.app, name="plugin")

@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Address to bind"),
    port: int = typer.Option(8080, help="Port to listen on"),
):
    """Serve the cluster registry HTTP API."""
    import uvicorn
    uvicorn.run("clusterreg.api.main:app", host=host, port=port)

# Global options callback
@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """clusterreg - register and inspect GitOps deployment target clusters."""
    global debug_mode
    debug_mode = debug
    setup_logging(debug)
    if debug:
        logging.debug("Debug mode enabled")

def run(argv: Optional[List[str]] = None) -> int:
    """Console entry point: runs the CLI, falling back to plugins for unknown commands."""
    args = list(sys.argv[1:] if argv is None else argv)
    command = typer.main.get_command(app)
    try:
        result = command.main(args=args, prog_name="clusterreg", standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.exceptions.Abort:
        typer.echo("Aborted!", err=True)
        return 1
    except click.ClickException as e:
        try:
            return PluginHandler(Config.PLUGIN_PREFIXES).handle_command_execution_error(e, args)
        except PluginError as plugin_err:
            logging.error(f"Error: {plugin_err}")
            return 1
        except click.ClickException as err:
            err.show()
            return err.exit_code
    except Exception as e:
        if debug_mode:
            import traceback
            logging.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.error(f"Error: {e}")
        return 1

if __name__ == "__main__":
    sys.exit(run())
