"""CLI entry point for moonwatch."""

import asyncio
import sys
from pathlib import Path

import click

from moonwatch import __version__
from moonwatch.config import get_settings
from moonwatch.engine import run_session
from moonwatch.journal.store import JournalStore
from moonwatch.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show the version")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """moonwatch - admission, risk gating and swap execution for new tokens."""
    if version:
        click.echo(f"moonwatch version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("tokens", nargs=-1)
@click.option(
    "--file",
    "-f",
    "tokens_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File with one token address per line",
)
@click.option(
    "--confidence",
    type=click.FloatRange(0.0, 1.0),
    default=1.0,
    help="Confidence attached to every candidate",
)
@click.option(
    "--linger",
    type=float,
    default=0.0,
    help="Seconds to keep running after the queue drains",
)
def run(tokens: tuple[str, ...], tokens_file: Path | None, confidence: float, linger: float) -> None:
    """Run the given candidate tokens through admission, risk and execution."""
    setup_logging()
    logger = get_logger("moonwatch.main")
    settings = get_settings()

    settings.ensure_directories()

    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="set the missing keys in the .env file",
            )
            sys.exit(1)

    addresses = list(tokens)
    if tokens_file is not None:
        addresses.extend(_read_token_file(tokens_file))
    if not addresses:
        click.echo("No token addresses given.")
        sys.exit(2)

    logger.info("starting_session", mode=settings.mode.value, tokens=len(addresses))

    try:
        snapshot = asyncio.run(
            run_session(
                settings,
                addresses,
                confidence=confidence,
                linger_seconds=linger,
            )
        )
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)

    risk = snapshot.get("risk") or {}
    logger.info(
        "run_completed",
        positions=len(snapshot.get("positions", {})),
        uncertain=len(snapshot.get("uncertain", {})),
        balance=risk.get("current_balance"),
        breaker_tripped=risk.get("circuit_breaker_tripped"),
    )


@cli.command()
def status() -> None:
    """Show the configuration summary."""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("moonwatch - Status")
    click.echo("=" * 50)
    click.echo()

    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    click.echo("[Endpoints]")
    rpc_status = "[OK] Configured" if settings.solana_rpc_url else "[--] Not configured"
    wallet_status = "[OK] Configured" if settings.wallet_private_key else "[--] Not configured"
    click.echo(f"   RPC endpoint: {rpc_status}")
    click.echo(f"   Wallet key: {wallet_status}")
    click.echo(f"   Aggregator: {settings.jupiter_api_url}")
    click.echo(f"   Commitment: {settings.confirmation_commitment}")
    click.echo()

    click.echo("[Admission]")
    click.echo(f"   Max concurrent: {settings.max_concurrent}")
    click.echo(f"   Token cooldown: {settings.token_cooldown_seconds}s")
    click.echo(f"   Min confidence: {settings.min_candidate_confidence}")
    click.echo()

    click.echo("[Risk Parameters]")
    click.echo(f"   Max drawdown: {settings.max_drawdown_pct}%")
    click.echo(f"   Max daily loss: {settings.max_daily_loss_pct}%")
    click.echo(f"   Emergency stop at: {settings.emergency_stop_threshold_pct}%")
    click.echo(f"   Max positions: {settings.max_positions}")
    click.echo(f"   Max position size: {settings.max_position_size}")
    click.echo(
        f"   Trade rate: {settings.max_trades_per_minute}/min, "
        f"{settings.max_trades_per_hour}/h, {settings.max_trades_per_day}/day"
    )
    click.echo()

    click.echo("[Execution]")
    click.echo(f"   Attempts: {settings.max_attempts} (backoff {settings.retry_base_delay_seconds}s x n)")
    click.echo(f"   Confirmation: {settings.confirm_attempts} polls every {settings.confirm_delay_seconds}s")
    click.echo(f"   Call timeout: {settings.call_timeout_seconds}s")
    click.echo(f"   Slippage: {settings.default_slippage_bps} bps")
    click.echo()

    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require endpoint configuration")

    click.echo()
    click.echo("=" * 50)


@cli.command()
@click.argument("token")
def history(token: str) -> None:
    """Show the journaled events for one token."""
    settings = get_settings()
    store = JournalStore(settings.journal_dir)
    records = store.token_history(token)
    if not records:
        click.echo(f"No journal entries for {token}.")
        return
    for record in records:
        payload = record["payload"]
        detail = ""
        if record["event_type"] == "execution_result":
            detail = f" success={payload.get('success')} kind={payload.get('error_kind')}"
        elif record["event_type"] == "risk_check":
            detail = f" allowed={payload.get('allowed')} reasons={payload.get('reasons')}"
        click.echo(f"{record['timestamp']}  {record['event_type']}{detail}")


@cli.command()
def check() -> None:
    """Check dependencies and configuration."""
    setup_logging()
    logger = get_logger("moonwatch.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("httpx", "HTTP client"),
        ("solders", "Transaction signing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


def _read_token_file(path: Path) -> list[str]:
    addresses = []
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            addresses.append(stripped)
    return addresses


# Support `python -m moonwatch.main`
if __name__ == "__main__":
    cli()
