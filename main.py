#!/usr/bin/env python3
"""
PEHCHAAN - Probabilistic Visitor Identity Service
=================================================

Main entry point for the PEHCHAAN matching service.

The service receives weak device signals from visiting clients and decides
on every visit whether it is seeing a known device, a member of a known
household, or a new visitor.

Features:
- Same-device matching with fuzzy signal tolerances
- Household-level cross-device linking
- Server-held identity tokens for client-side identifier repair
- Background pruning and per-client rate limiting

Usage:
    python main.py                   # Start the service
    python main.py --debug           # Enable debug logging
    python main.py --port 8080       # Override API port
    python main.py --prune-only      # Run one maintenance pass and exit

Author: Team PEHCHAAN
License: MIT
"""

import sys
import signal
import threading
from pathlib import Path
from typing import Optional

import yaml
import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

# Import PEHCHAAN modules
from core.profile_store import ProfileStore, PruneResult
from core.identity_resolver import IdentityResolver
from core.rate_limiter import SlidingWindowRateLimiter
from core.maintenance import MaintenanceScheduler
from api.app import create_app

# Rich console for pretty output
console = Console()


def load_config(config_path: str = "config/config.yaml") -> dict:
    """Load configuration from YAML file."""
    config_file = PROJECT_ROOT / config_path
    if not config_file.exists():
        logger.error(f"Config file not found: {config_file}")
        sys.exit(1)

    with open(config_file, "r") as f:
        config = yaml.safe_load(f) or {}

    return config


def setup_logging(config: dict) -> None:
    """Configure logging based on config."""
    log_config = config.get("logging", {})
    log_level = config.get("general", {}).get("log_level", "INFO")
    log_file = PROJECT_ROOT / log_config.get("file", "data/logs/pehchaan.log")

    # Ensure log directory exists
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Remove default logger and add custom configuration
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | <level>{message}</level>"
    )
    logger.add(
        str(log_file),
        level=log_level,
        rotation=log_config.get("max_size", "10 MB"),
        retention=log_config.get("backup_count", 5),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}"
    )


def print_banner():
    """Print PEHCHAAN banner."""
    banner = """
    ██████╗ ███████╗██╗  ██╗ ██████╗██╗  ██╗ █████╗  █████╗ ███╗   ██╗
    ██╔══██╗██╔════╝██║  ██║██╔════╝██║  ██║██╔══██╗██╔══██╗████╗  ██║
    ██████╔╝█████╗  ███████║██║     ███████║███████║███████║██╔██╗ ██║
    ██╔═══╝ ██╔══╝  ██╔══██║██║     ██╔══██║██╔══██║██╔══██║██║╚██╗██║
    ██║     ███████╗██║  ██║╚██████╗██║  ██║██║  ██║██║  ██║██║ ╚████║
    ╚═╝     ╚══════╝╚═╝  ╚═╝ ╚═════╝╚═╝  ╚═╝╚═╝  ╚═╝╚═╝  ╚═╝╚═╝  ╚═══╝
                          पहचान - Visitor Identity
    """

    console.print(Panel(
        Text(banner, style="bold cyan"),
        title="[bold white]Probabilistic Visitor Identity Service[/bold white]",
        subtitle="[dim]Same device, same household, or someone new[/dim]",
        border_style="cyan"
    ))


def print_prune_result(result: PruneResult, sessions_removed: int = 0):
    """Print a maintenance pass as a table."""
    table = Table(title="Maintenance Pass", border_style="cyan")
    table.add_column("Category", style="cyan")
    table.add_column("Rows removed", justify="right")

    table.add_row("Duplicate profiles", str(result.duplicates_removed))
    table.add_row("Stale profiles", str(result.stale_removed))
    table.add_row("Idle identity tokens", str(result.tokens_removed))
    table.add_row("Orphan households", str(result.households_removed))
    table.add_row("Expired ultrasonic sessions", str(sessions_removed))

    console.print(table)


class PehchaanService:
    """
    Wires the store, resolver, limiter, scheduler and Flask app together.
    """

    def __init__(self, config: dict):
        """
        Initialize service components.

        Args:
            config: PEHCHAAN configuration dictionary
        """
        self.config = config
        self.running = False

        db_path = config.get("database", {}).get("path", "data/pehchaan.db")
        self.store = ProfileStore(config, db_path=str(PROJECT_ROOT / db_path))
        self.resolver = IdentityResolver(config, self.store)
        self.rate_limiter = SlidingWindowRateLimiter(config)
        self.scheduler = MaintenanceScheduler(config, self.store, self.rate_limiter)
        self.app = create_app(config, self.store, resolver=self.resolver, rate_limiter=self.rate_limiter)

        self._api_thread: Optional[threading.Thread] = None

        logger.info("PehchaanService initialized")

    def start(self, block: bool = True):
        """Run the startup prune, start maintenance loops and serve the API."""
        if self.running:
            logger.warning("PehchaanService already running")
            return

        self.running = True

        try:
            result = self.scheduler.run_prune()
            logger.info(f"Startup prune complete ({result.total} rows removed)")
        except Exception as e:
            logger.error(f"Startup prune failed: {e}")

        self.scheduler.start()

        api_config = self.config.get("api", {})
        console.print("[bold green]PEHCHAAN Started[/bold green]")
        console.print(f"[dim]API: http://{api_config.get('host', '0.0.0.0')}:{api_config.get('port', 5000)}"
                      f"{self.app.url_prefix}[/dim]\n")

        if block:
            self._run_flask_app()
        else:
            self._api_thread = threading.Thread(target=self._run_flask_app, daemon=True, name="FlaskAPI")
            self._api_thread.start()

    def stop(self):
        """Stop background tasks."""
        if not self.running:
            return

        self.running = False
        self.scheduler.stop()
        logger.info("PehchaanService stopped")

    def _run_flask_app(self):
        """Run the Flask API with the threaded development server."""
        host = self.config.get("api", {}).get("host", "0.0.0.0")
        port = self.config.get("api", {}).get("port", 5000)
        debug = self.config.get("general", {}).get("debug", False)

        self.app.run(
            host=host,
            port=port,
            debug=debug,
            use_reloader=False,
            threaded=True
        )

    def get_status(self) -> dict:
        """Get current service status."""
        return {
            "running": self.running,
            "store": self.store.get_stats(),
            "maintenance": self.scheduler.get_statistics(),
            "rate_limiter": {
                **self.rate_limiter.stats,
                "tracked_clients": self.rate_limiter.tracked_clients
            }
        }


@click.command()
@click.option("--config", "-c", default="config/config.yaml", help="Path to config file")
@click.option("--debug", "-d", is_flag=True, help="Enable debug logging")
@click.option("--host", default=None, help="API bind address")
@click.option("--port", "-p", default=None, type=int, help="API port")
@click.option("--prune-only", is_flag=True, help="Run one maintenance pass and exit")
def main(config: str, debug: bool, host: Optional[str], port: Optional[int], prune_only: bool):
    """
    PEHCHAAN - Probabilistic Visitor Identity Service

    Serves the matching API under the configured prefix (default /api) and
    runs pruning and rate-limit sweeps in the background.
    """
    # Print banner
    print_banner()

    # Load configuration
    cfg = load_config(config)

    # Override config with CLI options
    if debug:
        cfg.setdefault("general", {})["debug"] = True
        cfg["general"]["log_level"] = "DEBUG"
    if host:
        cfg.setdefault("api", {})["host"] = host
    if port:
        cfg.setdefault("api", {})["port"] = port

    # Setup logging
    setup_logging(cfg)

    service = PehchaanService(cfg)

    if prune_only:
        result = service.scheduler.run_prune()
        print_prune_result(result, service.scheduler.stats["ultrasonic_sessions_pruned"])
        return

    # Handle shutdown signals
    def signal_handler(signum, frame):
        console.print("\n[yellow]Shutting down PEHCHAAN...[/yellow]")
        service.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Start the service
    try:
        service.start()
    except KeyboardInterrupt:
        service.stop()
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        service.stop()
        sys.exit(1)


if __name__ == "__main__":
    main()
