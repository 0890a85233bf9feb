"""
Command-line interface for the bot fleet controller using Typer
"""
import signal
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from fleet_control.config import (
    ConfigError, ConfigManager, FleetControllerConfig,
    create_default_config_file, load_config_with_env_override
)
from fleet_control.gateway import DiscoveryFailure
from fleet_control.policies import PolicyInputs, create_policy
from fleet_control.scheduler import CycleReport

from .asf_gateway import ASFGateway
from .logger import get_logger
from .service import build_service

app = typer.Typer(
    name="botfleet",
    help="Keep the number of running ASF bots tracking a daily demand curve",
    no_args_is_help=True,
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to a YAML configuration file"),
]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Show detailed information")]
DebugOption = Annotated[bool, typer.Option("--debug", help="Enable debug logging")]


def _load_config(config_path: Optional[Path], debug: bool = False, verbose: bool = False,
                 require_valid: bool = True) -> FleetControllerConfig:
    """Load .env, the config file and environment overrides, then set up logging"""
    load_dotenv()

    try:
        config = load_config_with_env_override(config_path)
    except ConfigError as e:
        get_logger().error(str(e))
        raise typer.Exit(1)

    debug = debug or config.logging.log_level == "DEBUG"
    verbose = verbose or config.logging.verbose or config.logging.log_level == "INFO"
    logger = get_logger(debug=debug, verbose=verbose)

    if require_valid:
        errors = ConfigManager().validate_config(config)
        if errors:
            for error in errors:
                logger.error(error)
            raise typer.Exit(1)

    return config


def _print_report(report: CycleReport) -> None:
    table = Table(title=f"Cycle {report.cycle_id} ({report.trigger})")
    table.add_column("Field")
    table.add_column("Value")

    decision = report.decision
    if decision is not None:
        table.add_row("Policy", decision.policy)
        table.add_row("Reason", decision.reason)
        table.add_row("Target", str(decision.target_active))
        table.add_row("To start", str(decision.to_start))
        table.add_row("To stop", str(decision.to_stop))
    table.add_row("Started", str(report.started))
    table.add_row("Stopped", str(report.stopped))
    table.add_row("Failed", str(len(report.failed)))
    table.add_row("Skipped", str(report.skipped))
    if report.abandoned:
        table.add_row("Abandoned", str(report.abandoned))
    if report.error:
        table.add_row("Error", f"[red]{report.error}[/red]")

    console.print(table)


def _asf_version(status: dict) -> str:
    result = status.get("Result")
    if isinstance(result, dict) and result.get("Version"):
        return str(result["Version"])
    return "?"


@app.command()
def run(
    config: ConfigOption = None,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
    skip_first: Annotated[bool, typer.Option("--skip-first", help="Wait one period before the first cycle")] = False,
):
    """Discover the fleet and run the control loop until interrupted"""
    fleet_config = _load_config(config, debug=debug, verbose=verbose)
    logger = get_logger()

    try:
        service = build_service(fleet_config)
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    scheduler = service.scheduler

    def _force_cycle(signum, frame):
        logger.cycle_info("Cycle requested by signal")
        scheduler.request_cycle()

    def _log_status(signum, frame):
        logger.audit("Fleet status", scheduler.get_status(), label="status")

    def _shutdown(signum, frame):
        logger.warning("Shutdown requested, finishing the in-flight call")
        scheduler.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, _force_cycle)
    if hasattr(signal, "SIGUSR2"):
        signal.signal(signal.SIGUSR2, _log_status)

    try:
        scheduler.run_forever(run_immediately=not skip_first)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
    finally:
        service.close()


@app.command()
def once(
    config: ConfigOption = None,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
):
    """Discover the fleet, run a single control cycle and exit"""
    fleet_config = _load_config(config, debug=debug, verbose=verbose)
    logger = get_logger()

    try:
        service = build_service(fleet_config)
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    try:
        report = service.scheduler.run_cycle(trigger="manual")
    finally:
        service.close()

    _print_report(report)
    if report.error:
        raise typer.Exit(1)


@app.command()
def hosts(
    config: ConfigOption = None,
    verbose: VerboseOption = False,
    debug: DebugOption = False,
):
    """List the configured hosts and the bots each one reports"""
    fleet_config = _load_config(config, debug=debug, verbose=verbose)

    table = Table(title="ASF hosts")
    table.add_column("#", justify="right")
    table.add_column("Host")
    table.add_column("Bots", justify="right")
    if verbose:
        table.add_column("ASF version")
    table.add_column("Status")

    failures = 0
    with ASFGateway(fleet_config.hosts, timeout=fleet_config.http.timeout) as gateway:
        for index in range(gateway.host_count):
            try:
                names = gateway.list_worker_names(index)
                version = _asf_version(gateway.get_status(index)) if verbose else None
            except DiscoveryFailure as e:
                failures += 1
                row = [str(index), gateway.host_label(index), "-"] + (["-"] if verbose else [])
                table.add_row(*row, f"[red]{e.cause}[/red]")
                continue
            row = [str(index), gateway.host_label(index), str(len(names))] + ([version] if verbose else [])
            table.add_row(*row, "[green]ok[/green]")

    console.print(table)
    if failures:
        raise typer.Exit(1)


@app.command()
def preview(
    hour: Annotated[int, typer.Option(min=0, max=23, help="Hour of day to evaluate")],
    minute: Annotated[int, typer.Option(min=0, max=59, help="Minute of the hour")] = 0,
    running: Annotated[int, typer.Option(min=0, help="Workers currently running")] = 0,
    disabled: Annotated[int, typer.Option(min=0, help="Workers currently disabled")] = 0,
    previous: Annotated[Optional[float], typer.Option(help="Previous demand sample")] = None,
    current: Annotated[Optional[float], typer.Option(help="Current demand sample")] = None,
    policy: Annotated[Optional[str], typer.Option(help="Override the configured policy")] = None,
    config: ConfigOption = None,
):
    """Show the decision a policy would make, without contacting any host"""
    fleet_config = _load_config(config, require_valid=False)
    logger = get_logger()

    if policy:
        try:
            fleet_config = ConfigManager().apply_overrides(fleet_config, {"policy": policy})
        except ConfigError as e:
            logger.error(str(e))
            raise typer.Exit(1)

    scaling_policy = create_policy(fleet_config)
    now = datetime.now(fleet_config.tzinfo).replace(hour=hour, minute=minute, second=0, microsecond=0)
    inputs = PolicyInputs(
        running_count=running,
        disabled_count=disabled,
        now=now,
        previous_demand=previous,
        current_demand=current,
    )
    decision = scaling_policy.decide(inputs)

    table = Table(title=f"Policy '{scaling_policy.name}' at {hour:02d}:{minute:02d}")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Target", str(decision.target_active))
    table.add_row("To start", str(decision.to_start))
    table.add_row("To stop", str(decision.to_stop))
    table.add_row("Reason", decision.reason)
    console.print(table)


@app.command("init-config")
def init_config(
    path: Annotated[Path, typer.Argument(help="Where to write the example configuration")],
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite an existing file")] = False,
):
    """Write an example configuration file"""
    logger = get_logger()

    if path.exists() and not force:
        logger.error(f"{path} already exists (use --force to overwrite)")
        raise typer.Exit(1)

    try:
        create_default_config_file(path)
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    console.print(f"✓ Configuration written to [green]{path}[/green]")


@app.command()
def validate(
    config: ConfigOption = None,
):
    """Check the configuration and report every problem found"""
    fleet_config = _load_config(config, require_valid=False)

    errors = ConfigManager().validate_config(fleet_config)
    if errors:
        for error in errors:
            console.print(f"[red]✗ {error}[/red]")
        raise typer.Exit(1)

    console.print(f"✓ Configuration is valid: {len(fleet_config.hosts)} hosts, "
                  f"policy '{fleet_config.policy}', max {fleet_config.max_workers} workers")


def main():
    """Main entry point for the CLI"""
    app()


if __name__ == "__main__":
    main()
