"""CLI entry point for the durable memory engine."""

import click

from cli.commands import memory
from cli.config import load_config_model
from cli.logging_config import setup_logging


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines on stderr")
def cli(verbose: bool, json_logs: bool):
    """Durable memory - grounded fact ingestion and hybrid retrieval."""
    try:
        config = load_config_model()
    except ValueError:
        # Reported by get_components.
        setup_logging(json_mode=json_logs, level="DEBUG" if verbose else "INFO")
        return
    log_cfg = config.logging
    setup_logging(
        json_mode=json_logs or log_cfg.json_mode,
        level="DEBUG" if verbose else log_cfg.level,
        log_file=config.paths.log_file,
        file_level=log_cfg.file_level,
    )


cli.add_command(memory)


if __name__ == "__main__":
    cli()
