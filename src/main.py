"""
Main entry point for the Polymarket CLOB auth preflight.
Authenticates, optionally runs the auth matrix, then keeps verifying
credentials on an interval and reports whether live trading may run.
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

# Use uvloop for better performance on Linux
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available (Windows)

from .auth.diagnostics import trading_blockers
from .auth.errors import AuthError
from .auth.service import AuthService
from .clients.clob_client import CLOBClient
from .config import load_config, Config
from .utils.logger import setup_logging, get_logger

logger = get_logger("main")


class PreflightRunner:
    """
    Runs authentication and periodic preflight checks.

    Coordinates:
    - Identity resolution and credential negotiation
    - Optional auth matrix probe
    - Preflight checks on an interval
    - Trading gate reporting
    """

    def __init__(self, config: Config, interval_seconds: Optional[int] = None):
        """Initialize runner with configuration."""
        self.config = config
        self.interval_seconds = interval_seconds or config.preflight.interval_seconds
        self._shutdown_event = asyncio.Event()

        self.clob_client = CLOBClient(
            host=config.clob.host,
            timeout_seconds=config.clob.timeout_seconds
        )
        self.auth = AuthService(config, self.clob_client)

    async def initialize(self) -> None:
        """Resolve identity and open the HTTP session."""
        logger.info("Initializing auth preflight")
        self.auth.resolve_identity()
        await self.clob_client.initialize()

    async def authenticate(self, run_matrix: bool = False) -> bool:
        """Negotiate credentials; returns whether auth succeeded."""
        if run_matrix:
            self.auth.matrix.enabled = True
            result = await self.auth.run_matrix_probe()
            if result is not None:
                print(result.table)

        outcome = await self.auth.authenticate_with_backoff()
        self._report()
        return outcome is not None and outcome.success

    async def run(self, once: bool = False) -> None:
        """
        Preflight loop until shutdown is requested.

        Without cached credentials (never obtained, or dropped after
        repeated failures) each cycle re-authenticates behind a backoff.
        """
        while not self._shutdown_event.is_set():
            if self.auth.context.credentials is None:
                result = await self.auth.authenticate_with_backoff()
            else:
                result = await self.auth.preflight()
            if result is not None:
                self._report()
            if once:
                break
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass  # Next cycle

    def _report(self) -> None:
        if self.auth.trading_allowed:
            logger.info("READY_TO_TRADE", extra={"event": "trading_gate", "allowed": True})
            return
        blockers = trading_blockers(
            auth_ok=self.auth.auth_ok,
            live_trading_enabled=not self.config.risk.simulation_mode
        )
        logger.warning(
            f"PRIMARY_BLOCKER: {blockers[0] if blockers else 'unknown'}",
            extra={"event": "trading_gate", "allowed": False, "blockers": blockers}
        )

    async def shutdown(self) -> None:
        """Close HTTP session."""
        logger.info("Shutting down")
        await self.clob_client.close()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def setup_signal_handlers(runner: PreflightRunner) -> None:
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        runner.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Polymarket CLOB auth preflight")
    parser.add_argument("--matrix", action="store_true", help="Run the auth matrix probe first")
    parser.add_argument("--once", action="store_true", help="Run a single preflight cycle and exit")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between preflight cycles")
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Load configuration
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    # Set up logging
    setup_logging(
        level=config.logging.log_level,
        json_format=config.logging.json_logging
    )

    logger.info("Starting Polymarket CLOB auth preflight")

    try:
        runner = PreflightRunner(config, interval_seconds=args.interval)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    setup_signal_handlers(runner)

    try:
        await runner.initialize()
        await runner.authenticate(run_matrix=args.matrix)
        await runner.run(once=args.once)
        return 0 if runner.auth.auth_ok else 2
    except (AuthError, ValueError) as e:
        logger.error(f"Fatal configuration error: {e}")
        return 1
    finally:
        await runner.shutdown()


def cli() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
