"""Shared CLI utilities."""

import sys

import structlog
from rich.console import Console

console = Console()
logger = structlog.get_logger()


def get_components(config_path=None):
    """Initialize store, LLM collaborator and engine from config.

    Must be called with a running event loop available to the caller's
    coroutines; nothing here starts tasks.
    """
    from cli.config import get_paths, load_config, load_config_model
    from llm.client import MemoryLLM
    from memory.engine import MemoryEngine
    from memory.store import FactStore

    try:
        config_model = load_config_model(config_path)
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)
    config = load_config(config_path)
    paths = get_paths(config)

    store = FactStore(paths["db_path"])
    llm = MemoryLLM(config_model)
    engine = MemoryEngine(store, llm, paths["memory_dir"], config=config_model)

    return {
        "config": config,
        "config_model": config_model,
        "paths": paths,
        "store": store,
        "llm": llm,
        "engine": engine,
    }
