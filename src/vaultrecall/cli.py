from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path
import sys

import typer

from .config import VaultConfig
from .indexer.change_detector import ChangeDetector
from .indexer.idle import ActivityMonitor
from .indexer.manager import IndexManager
from .mcp.server import run_stdio_server

app = typer.Typer(add_completion=False, no_args_is_help=True)


def _cfg(config: str) -> VaultConfig:
    try:
        return VaultConfig.from_toml(config)
    except (OSError, KeyError, ValueError) as e:
        raise typer.BadParameter(f"Cannot load config {config}: {e}")


def _setup_logging(log_file: str | None, log_level: str, verbose: bool) -> None:
    """Configure the vaultrecall logger: console plus optional rotating file."""
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    handlers: list[logging.Handler] = []

    # stderr so that stdout stays clean for JSON and the stdio server
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(fmt, datefmt))
    handlers.append(console)

    if log_file:
        from logging.handlers import RotatingFileHandler
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(fmt, datefmt))
        handlers.append(file_handler)

    logger = logging.getLogger("vaultrecall")
    logger.setLevel(level)
    logger.handlers.clear()
    for h in handlers:
        logger.addHandler(h)


def _logging_from(cfg: VaultConfig, log_file: str | None, log_level: str | None, verbose: bool) -> None:
    # CLI flag > config setting
    _setup_logging(log_file or cfg.log_file, log_level or cfg.log_level, verbose)


async def _open(cfg: VaultConfig, idle_source: ActivityMonitor | None = None) -> IndexManager:
    """Manager with the index restored from cache when possible, rebuilt otherwise."""
    manager = IndexManager.from_config(cfg, idle_source=idle_source)
    # Vector metadata first, so files changed offline lose their old vectors
    embeddings = cfg.embedding_enabled and await manager.initialize_embedding()
    if await manager.build_index_from_cache() < 0:
        await manager.build_index()
    if embeddings:
        await manager.load_vector_store()
    return manager


@app.command()
def init(vault: str = typer.Option(..., help="Vault root path"),
         index: str = typer.Option(..., help="Index directory"),
         out: str = typer.Option("config.toml", help="Write example config to this path")):
    """Write a starter config.toml."""
    outp = Path(out)
    outp.write_text(f"""[vault]
root = "{vault}"
exclude_folders = ["Templates"]
extensions = [".md"]

[index]
dir = "{index}"

[chunking]
strategy = "section"   # section|paragraph|fixed
max_tokens = 512

[retrieval]
top_k = 5
min_score = 0.3

[embeddings]
enabled = false
provider = "openai"    # openai|ollama|sentence_transformers
model = "text-embedding-3-small"
api_key_env = "OPENAI_API_KEY"
auto_embed = false
idle_seconds = 30

[proximity]
enabled = true
boost_factor = 0.5

[watch]
debounce_ms = 500

[logging]
level = "INFO"
# file = "~/.vaultrecall/watch.log"
""", encoding="utf-8")
    typer.echo(f"Wrote {outp}")


@app.command()
def scan(config: str = typer.Option("config.toml"),
         full: bool = typer.Option(False, help="Ignore the index cache and re-chunk every note"),
         log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR"),
         verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Build the lexical index and save the index cache."""
    cfg = _cfg(config)
    _logging_from(cfg, None, log_level, verbose)

    async def run() -> None:
        manager = IndexManager.from_config(cfg)
        changed = -1 if full else await manager.build_index_from_cache()
        if changed < 0:
            stats = await manager.build_index()
            if stats is not None:
                typer.echo(f"Scan complete: {stats.files_indexed} files, {stats.chunks_created} chunks "
                           f"in {stats.elapsed_seconds:.1f}s")
        else:
            typer.echo(f"Index restored from cache: {changed} files changed")
        # Persists the index cache and any pruned vector shards
        await manager.close()

    asyncio.run(run())


@app.command()
def embed(config: str = typer.Option("config.toml"),
          rebuild: bool = typer.Option(False, help="Drop existing vectors first"),
          log_level: str = typer.Option(None, "--log-level"),
          verbose: bool = typer.Option(False, "--verbose", "-v")):
    """Embed every chunk that has no vector yet."""
    cfg = _cfg(config)
    if not cfg.embedding_enabled:
        raise typer.BadParameter("Embeddings are disabled; set [embeddings] enabled = true")
    _logging_from(cfg, None, log_level, verbose)

    def progress(done: int, total: int) -> None:
        if total:
            typer.echo(f"  embedded {done}/{total}", err=True)

    async def run() -> None:
        manager = await _open(cfg)
        if rebuild:
            await manager.clear_embedding_index()
        n = await manager.build_embedding_index(on_progress=progress)
        stats = manager.get_stats()
        typer.echo(f"Embedded {n} chunks; {stats.embedding_indexed} vectors stored")
        await manager.close()

    asyncio.run(run())


@app.command()
def query(q: str,
          config: str = typer.Option("config.toml"),
          k: int = typer.Option(None, help="Number of results (default: from config)"),
          min_score: float = typer.Option(None, help="Lexical score threshold (default: from config)"),
          anchor: str = typer.Option("", help="Vault path of the current note, for proximity boosting"),
          markdown: bool = typer.Option(False, help="Print the formatted tool output instead of JSON")):
    """Search the vault."""
    cfg = _cfg(config)
    _logging_from(cfg, None, "WARNING", False)

    async def run() -> None:
        manager = await _open(cfg)
        if markdown:
            typer.echo(await manager.execute_tool_search(q, k))
        else:
            doc = manager.source.get_document(anchor) if anchor else None
            hits = await manager.search(q, top_k=k, min_score=min_score, anchor=doc)
            results = [
                {
                    "chunk_id": h.chunk.id,
                    "score": h.score,
                    "match_type": h.match_type,
                    "file_path": h.chunk.file_path,
                    "heading": h.chunk.heading,
                    "lines": [h.chunk.start_line, h.chunk.end_line],
                    "snippet": h.chunk.content[:300],
                    "metadata": h.metadata,
                }
                for h in hits
            ]
            typer.echo(json.dumps(results, indent=2))
        await manager.close()

    asyncio.run(run())


@app.command()
def status(config: str = typer.Option("config.toml")):
    """Show index statistics."""
    cfg = _cfg(config)
    _logging_from(cfg, None, "WARNING", False)

    async def run() -> None:
        manager = IndexManager.from_config(cfg)
        if cfg.embedding_enabled:
            await manager.initialize_embedding()
        cache = manager.load_index_cache()
        if cache is not None:
            await manager.build_index_from_cache(cache)
        stats = manager.get_stats()
        typer.echo(json.dumps(dataclasses.asdict(stats), indent=2))

    asyncio.run(run())


@app.command()
def watch(config: str = typer.Option("config.toml"),
          log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path for audit trail"),
          log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR"),
          verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Watch the vault and keep the index current until interrupted."""
    cfg = _cfg(config)
    _logging_from(cfg, log_file, log_level, verbose)
    log = logging.getLogger("vaultrecall.cli")

    async def run() -> None:
        activity = ActivityMonitor()
        manager = await _open(cfg, idle_source=activity)
        if cfg.embedding_enabled and cfg.auto_embed:
            manager.start_auto_embedding()
        observer = ChangeDetector(cfg.vault_root, manager, asyncio.get_running_loop(), activity).start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            observer.stop()
            observer.join()
            await manager.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("Watch stopped")


@app.command()
def mcp(config: str = typer.Option("config.toml")):
    """Run the JSON-RPC server on stdio."""
    cfg = _cfg(config)
    _logging_from(cfg, None, None, False)

    async def run() -> None:
        activity = ActivityMonitor()
        manager = await _open(cfg, idle_source=activity)
        if cfg.embedding_enabled and cfg.auto_embed:
            manager.start_auto_embedding()
        observer = ChangeDetector(cfg.vault_root, manager, asyncio.get_running_loop(), activity).start()
        try:
            await run_stdio_server(manager)
        finally:
            observer.stop()
            observer.join()
            await manager.close()

    asyncio.run(run())


if __name__ == "__main__":
    app()
