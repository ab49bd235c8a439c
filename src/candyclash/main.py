"""CLI entry point for the Candy Clash settlement engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click

from candyclash import __version__

if TYPE_CHECKING:
    from candyclash.config.models import AppConfig
    from candyclash.state.repository import SqlLedger


@click.group()
@click.version_option(version=__version__, prog_name="candyclash")
def cli() -> None:
    """Candy Clash: prize-pot settlement for daily tournaments."""


def _bootstrap(config_dir: str) -> AppConfig:
    from candyclash.config.loader import load_config
    from candyclash.monitoring.logging import setup_logging

    config = load_config(config_dir=config_dir)
    setup_logging(
        level=config.logging.level,
        json_output=config.logging.json_output,
        log_dir=config.logging.log_dir,
    )
    return config


def _open_ledger(config: AppConfig) -> SqlLedger:
    from candyclash.state.database import create_db_engine, get_session_factory
    from candyclash.state.repository import SqlLedger

    engine = create_db_engine(url=config.database.url, echo=config.database.echo)
    return SqlLedger(get_session_factory(engine), leaderboard_limit=config.settlement.leaderboard_limit)


def _read_mapping(path: str) -> dict[str, Any] | None:
    """Read a YAML or JSON document (JSON is valid YAML)."""
    import yaml

    with open(path) as f:
        data = yaml.safe_load(f)
    if data is not None and not isinstance(data, dict):
        raise click.BadParameter("expected a mapping at the top level", param_hint="FILE")
    return data


def _echo_payouts(payouts: tuple, refund: bool) -> None:
    label = "Refund" if refund else "Payout"
    for payout in payouts:
        click.echo(f"  #{payout.position:<4} {payout.display_name:<20} {label}: {payout.amount} gold")


@cli.command("init-db")
@click.option("--config-dir", default="config", help="Path to configuration directory.")
def init_db_cmd(config_dir: str) -> None:
    """Initialize the database (create tables)."""
    from candyclash.config.loader import load_config
    from candyclash.state.database import create_db_engine, init_db

    config = load_config(config_dir=config_dir)
    engine = create_db_engine(url=config.database.url, echo=config.database.echo)
    init_db(engine)
    click.echo(f"Database initialized at {config.database.url}")


@cli.command("validate-config")
@click.option("--config-dir", default="config", help="Path to configuration directory.")
def validate_config(config_dir: str) -> None:
    """Validate configuration files, including named distributions."""
    from candyclash.config.loader import load_config

    try:
        config = load_config(config_dir=config_dir)
        for name in config.distributions:
            config.distribution(name)
        config.distribution()
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1) from e

    click.echo("Configuration is valid.")
    click.echo(f"  Environment: {config.environment.value}")
    click.echo(f"  Database: {config.database.url}")
    click.echo(f"  Default entry fee: {config.settlement.default_entry_fee}")
    click.echo(f"  Default template: {config.settlement.default_template}")
    click.echo(f"  Distributions: {sorted(config.distributions) or 'none'}")


@cli.command()
def templates() -> None:
    """List the built-in distribution templates."""
    from candyclash.distribution.templates import DEFAULT_TEMPLATES

    for template in DEFAULT_TEMPLATES:
        marker = " (default)" if template.is_default else ""
        click.echo(f"{template.key}{marker}: {template.name}")
        click.echo(f"  {template.description}")
        for rule in template.config.rules:
            click.echo(f"    - {rule.describe()}")
        click.echo(f"    rake: {template.config.rake}% ({template.config.rake_type.value})")


@cli.command("check-distribution")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--rake-bps", default=0, show_default=True, help="Rake (basis points) for legacy formats.")
def check_distribution(file: str, rake_bps: int) -> None:
    """Validate a YAML or JSON distribution config and print every error."""
    from candyclash.distribution.legacy import load_distribution_config
    from candyclash.errors import ConfigValidationError

    try:
        config = load_distribution_config(_read_mapping(file), rake_bps=rake_bps)
    except ConfigValidationError as e:
        click.echo(f"Invalid distribution config ({len(e.errors)} error(s)):", err=True)
        for error in e.errors:
            click.echo(f"  - {error}", err=True)
        raise SystemExit(1) from e

    click.echo("Distribution config is valid.")
    click.echo(f"  Type: {config.type.value}")
    click.echo(f"  Rake: {config.rake} ({config.rake_type.value})")
    for rule in config.rules:
        click.echo(f"  - {rule.describe()}")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False), required=False)
@click.option("--template", "template_key", default=None, help="Preview a built-in template instead of FILE.")
@click.option("--players", default=10, show_default=True, help="Number of synthetic leaderboard entries.")
@click.option("--entry-fee", default=10, show_default=True, help="Entry fee per player.")
@click.option("--pot", type=int, default=None, help="Gross pot (default: players x entry fee).")
def preview(file: str | None, template_key: str | None, players: int, entry_fee: int, pot: int | None) -> None:
    """Dry-run payout resolution against a synthetic leaderboard."""
    from candyclash.distribution.legacy import load_distribution_config
    from candyclash.distribution.templates import default_template, get_template
    from candyclash.errors import ConfigValidationError
    from candyclash.settlement.resolver import resolve_payouts
    from candyclash.settlement.types import LeaderboardEntry

    try:
        if file is not None:
            config = load_distribution_config(_read_mapping(file))
        elif template_key is not None:
            config = get_template(template_key).config
        else:
            config = default_template().config
    except (ConfigValidationError, ValueError) as e:
        click.echo(f"Invalid distribution config: {e}", err=True)
        raise SystemExit(1) from e

    gross = pot if pot is not None else players * entry_fee
    leaderboard = [
        LeaderboardEntry(
            attempt_id=f"attempt-{rank}",
            user_id=f"player-{rank}",
            display_name=f"Player {rank}",
            time_ms=rank * 1000,
        )
        for rank in range(1, players + 1)
    ]
    result = resolve_payouts(leaderboard, config, gross, entry_fee)

    click.echo(f"Pot: {gross} gold, {players} players, entry fee {entry_fee}")
    if result.refund:
        click.echo("Outcome: refund (insufficient players or pot)")
    click.echo(f"Rake: {result.rake}")
    click.echo(f"Net pot: {result.net_pot}")
    _echo_payouts(result.payouts, result.refund)
    click.echo(f"Total paid: {result.total_paid} gold")


@cli.command()
@click.argument("period_id")
@click.option("--config-dir", default="config", help="Path to configuration directory.")
def settle(period_id: str, config_dir: str) -> None:
    """Settle one period and credit its winners."""
    from candyclash.errors import CandyClashError
    from candyclash.settlement.orchestrator import SettlementOrchestrator

    config = _bootstrap(config_dir)
    orchestrator = SettlementOrchestrator(_open_ledger(config))
    try:
        outcome = orchestrator.settle(period_id)
    except CandyClashError as e:
        click.echo(f"Settlement failed: {e}", err=True)
        raise SystemExit(1) from e

    if outcome.already_closed:
        click.echo(f"Period {period_id} was already closed.")
    else:
        click.echo(f"Period {period_id} settled.")
    click.echo(f"Rake: {outcome.rake}")
    _echo_payouts(outcome.payouts, outcome.refund)
    for warning in outcome.warnings:
        click.echo(f"Warning: {warning}", err=True)


@cli.command()
@click.option("--config-dir", default="config", help="Path to configuration directory.")
def sweep(config_dir: str) -> None:
    """Settle every active period whose end time has passed."""
    from candyclash.settlement.orchestrator import SettlementOrchestrator

    config = _bootstrap(config_dir)
    outcomes = SettlementOrchestrator(_open_ledger(config)).close_expired()
    if not outcomes:
        click.echo("No expired periods.")
        return
    for outcome in outcomes:
        paid = sum(p.amount for p in outcome.payouts)
        status = "refunded" if outcome.refund else "settled"
        click.echo(f"{outcome.period_id}: {status}, {len(outcome.payouts)} payouts, {paid} gold")


@cli.command("create-period")
@click.argument("period_id")
@click.option("--name", default=None, help="Display name (default: the period id).")
@click.option("--distribution", "distribution_name", default=None, help="Named distribution or template.")
@click.option("--entry-fee", type=int, default=None, help="Entry fee (default: from config).")
@click.option("--hours", default=24, show_default=True, help="Period length in hours.")
@click.option("--draft", is_flag=True, help="Create the period as a draft.")
@click.option("--config-dir", default="config", help="Path to configuration directory.")
def create_period(
    period_id: str,
    name: str | None,
    distribution_name: str | None,
    entry_fee: int | None,
    hours: int,
    draft: bool,
    config_dir: str,
) -> None:
    """Create a period with a validated prize distribution."""
    import datetime

    from candyclash.settlement.types import PeriodStatus, utcnow

    config = _bootstrap(config_dir)
    try:
        distribution = config.distribution(distribution_name)
    except Exception as e:
        click.echo(f"Invalid distribution: {e}", err=True)
        raise SystemExit(1) from e

    starts_at = utcnow()
    ledger = _open_ledger(config)
    period = ledger.create_period(
        period_id,
        name=name or period_id,
        entry_fee=entry_fee if entry_fee is not None else config.settlement.default_entry_fee,
        starts_at=starts_at,
        ends_at=starts_at + datetime.timedelta(hours=hours),
        prize_distribution=distribution.model_dump(mode="json", exclude_none=True),
        rake_bps=config.settlement.rake_bps,
        status=PeriodStatus.DRAFT if draft else PeriodStatus.ACTIVE,
    )
    click.echo(f"Created period {period.period_id} ({period.status.value}), ends {period.ends_at.isoformat()}")


if __name__ == "__main__":
    cli()
