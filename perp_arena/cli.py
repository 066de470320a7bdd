"""
CLI entrypoint for the perp arena simulation.

Provides commands to run the headless simulation and to create tables.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from perp_arena.config.config import Config, load_config
from perp_arena.monitoring.logger import bind_run_context, get_logger, run_log_file, setup_logging
from perp_arena.storage.db import init_db

app = typer.Typer(
    name="perp-arena",
    help="Perpetual futures battle arena simulation",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Optional[Path], seed: Optional[int]) -> Config:
    config = load_config(config_path)
    if seed is not None:
        config.system.seed = seed
    return config


@app.command()
def run(
    seconds: float = typer.Option(60.0, "--seconds", help="How long to run (simulated seconds with --fast)"),
    fast: bool = typer.Option(False, "--fast", help="Use the simulated clock instead of wall time"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for the random source"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="Write this run's log to a per-run file here"),
):
    """
    Run the arena headless and print a summary.

    Example:
        perp-arena run --seconds 300 --fast --seed 7
    """
    config = _load(config_path, seed)
    monitoring = config.monitoring
    asset = config.market.default_asset
    log_dir = log_dir or monitoring.log_dir
    log_file = monitoring.log_file
    if log_file is None and log_dir:
        log_file = run_log_file(str(log_dir), asset, fast, config.system.seed)
    setup_logging(monitoring.log_level, monitoring.log_format, log_file)
    bind_run_context(asset, fast, config.system.seed)

    from perp_arena.runtime.sim_clock import SimClock, WallClock
    from perp_arena.runtime.simulation import ArenaSimulation
    from perp_arena.storage.store import build_store

    async def _run():
        store = build_store(config)
        clock = SimClock() if fast else WallClock()
        sim = ArenaSimulation.create(config, store=store, clock=clock)
        await sim.load_positions()
        await sim.start()
        try:
            await sim.run_for(seconds)
        finally:
            await sim.stop()
        return sim

    logger.info("Starting arena run", seconds=seconds, fast=fast, seed=config.system.seed)
    sim = asyncio.run(_run())
    snap = sim.snapshot()

    typer.echo("\n" + "=" * 60)
    typer.echo(f"ARENA SUMMARY: {snap.asset}")
    typer.echo("=" * 60)
    typer.echo(f"Price:            {snap.price:.6g} ({snap.trend.value}, {snap.last_change_pct:+.3f}%)")
    typer.echo(f"Long staked:      {snap.total_long_staked:,.0f}  earn/s {snap.long_earnings_per_second:+.4f}")
    typer.echo(f"Short staked:     {snap.total_short_staked:,.0f}  earn/s {snap.short_earnings_per_second:+.4f}")
    typer.echo(f"Active positions: {snap.active_positions} (bots {snap.bot_positions}, users {snap.user_positions})")
    typer.echo(f"Liquidations:     {sim.liquidations}")
    typer.echo(f"Pool APR:         {snap.pool_apr:.2f}%  staked {snap.pool_total_staked:,.0f}")
    typer.echo("=" * 60)
    for entry in snap.recent_log:
        typer.echo(f"[{entry.type.value}] {entry.message}")


@app.command(name="init-db")
def init_db_cmd(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help="Override the configured URL"),
):
    """Create all tables for the configured database."""
    config = _load(config_path, None)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    url = database_url or config.storage.database_url
    if not url:
        typer.echo("No database URL configured (set DATABASE_URL or storage.database_url)", err=True)
        raise typer.Exit(code=1)
    db = init_db(url)
    db.dispose()
    typer.echo(f"Tables created ({db.engine.dialect.name})")


if __name__ == "__main__":
    app()
