"""
CLI entrypoint for the reposition engine.

Every command runs one tool through the same ``ToolService`` the bot and web
front-ends use and prints the JSON result.
"""
import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from repositioner.config.config import load_config
from repositioner.monitoring.logger import get_logger, setup_logging
from repositioner.services.factory import build_services

app = typer.Typer(
    name="repositioner",
    help="Liquidity position reposition engine",
    add_completion=False,
)

logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", help="Path to config file")


def _run_tool(tool_name: str, args: Dict[str, Any], config_path: Optional[Path]) -> Dict[str, Any]:
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)

    async def run():
        services = build_services(config)
        try:
            return await services.tools.call(tool_name, args)
        finally:
            await services.close()

    return asyncio.run(run())


def _emit(result: Dict[str, Any]) -> None:
    typer.echo(json.dumps(result, indent=2, default=str))
    if "error" in result:
        raise typer.Exit(code=1)


@app.command()
def positions(
    wallet: str = typer.Argument(..., help="Wallet address"),
    historical: bool = typer.Option(True, "--historical/--no-historical", help="Include database history"),
    live: bool = typer.Option(True, "--live/--no-live", help="Include live ledger positions"),
    config_path: Optional[Path] = ConfigOption,
):
    """Merged database + live positions for a wallet."""
    _emit(_run_tool(
        "get_user_positions_with_sync",
        {"walletAddress": wallet, "includeHistorical": historical, "includeLive": live},
        config_path,
    ))


@app.command()
def analyze(
    position: str = typer.Argument(..., help="Position address"),
    pool: Optional[str] = typer.Option(None, "--pool", help="Pool address"),
    config_path: Optional[Path] = ConfigOption,
):
    """Reposition recommendation for one position."""
    _emit(_run_tool("analyze_reposition", {"positionAddress": position, "poolAddress": pool}, config_path))


@app.command()
def prepare(
    position: str = typer.Argument(..., help="Position address"),
    wallet: str = typer.Option(..., "--wallet", help="Owner wallet address"),
    pool: Optional[str] = typer.Option(None, "--pool", help="Pool address"),
    strategy: Optional[str] = typer.Option(None, "--strategy", help="one-sided-x | one-sided-y | balanced"),
    bin_range: Optional[int] = typer.Option(None, "--bin-range", help="Half-width of the new range in bins"),
    slippage: Optional[int] = typer.Option(None, "--slippage", help="Slippage tolerance in basis points"),
    max_gas: Optional[float] = typer.Option(None, "--max-gas", help="Maximum gas cost in SOL"),
    config_path: Optional[Path] = ConfigOption,
):
    """Build an unsigned reposition transaction (premium)."""
    _emit(_run_tool("prepare_reposition", {
        "positionAddress": position,
        "walletAddress": wallet,
        "poolAddress": pool,
        "strategy": strategy,
        "binRange": bin_range,
        "slippage": slippage,
        "maxGasCost": max_gas,
        "timestamp": int(time.time() * 1000),
    }, config_path))


@app.command()
def settings(
    wallet: Optional[str] = typer.Option(None, "--wallet", help="Linked wallet address"),
    telegram_id: Optional[str] = typer.Option(None, "--telegram-id", help="Telegram user id"),
    update: Optional[str] = typer.Option(None, "--update", help='JSON object, e.g. \'{"autoRepositionEnabled": true}\''),
    config_path: Optional[Path] = ConfigOption,
):
    """Show or update reposition settings."""
    args: Dict[str, Any] = {"walletAddress": wallet, "telegramUserId": telegram_id}
    if update is None:
        _emit(_run_tool("get_reposition_settings", args, config_path))
        return
    try:
        args["settings"] = json.loads(update)
    except json.JSONDecodeError as e:
        typer.echo(f"--update is not valid JSON: {e}", err=True)
        raise typer.Exit(code=2)
    args["updatedFrom"] = "website"
    _emit(_run_tool("update_reposition_settings", args, config_path))


@app.command()
def credits(
    wallet: str = typer.Argument(..., help="Wallet address"),
    config_path: Optional[Path] = ConfigOption,
):
    """Credit balance and usage stats."""
    _emit(_run_tool("get_credit_balance", {"walletAddress": wallet}, config_path))


@app.command()
def tool(
    name: str = typer.Argument(..., help="Tool name"),
    args_json: str = typer.Argument("{}", help="Tool arguments as a JSON object"),
    config_path: Optional[Path] = ConfigOption,
):
    """Call any tool with raw JSON arguments."""
    try:
        args = json.loads(args_json)
    except json.JSONDecodeError as e:
        typer.echo(f"Arguments are not valid JSON: {e}", err=True)
        raise typer.Exit(code=2)
    _emit(_run_tool(name, args, config_path))


@app.command("init-db")
def init_db(config_path: Optional[Path] = ConfigOption):
    """Create database tables."""
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format)
    services = build_services(config)
    services.db.create_all()
    logger.info("DATABASE_INITIALIZED", postgres=services.db.is_postgres)
    typer.echo(json.dumps(services.repository.stats(), indent=2))
    asyncio.run(services.close())


if __name__ == "__main__":
    app()
