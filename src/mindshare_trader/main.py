"""Entrypoint for the mindshare momentum trader."""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from .config.settings import AppConfig, SchedulerConfig, get_app_config
from .datalake.schemas import CycleResult
from .datalake.storage import SQLiteStorage
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .services.housekeeping import HousekeepingService
from .services.scheduler import HousekeepingScheduler

logger = get_logger(__name__)


def build_service(config: AppConfig) -> HousekeepingService:
    alerts = bootstrap_observability(config)
    storage = SQLiteStorage(config.storage.database_path)
    if config.monitoring.risk_disclaimer:
        logger.warning("%s", config.monitoring.risk_disclaimer)
    if not config.tradeable_chain_ids():
        logger.warning("No allowed chain is configured for trading; only market data will be collected")
    return HousekeepingService(storage, config=config, alerts=alerts)


def _report(result: CycleResult) -> None:
    if result.skipped:
        logger.info("Cycle skipped: %s", result.summary)
    elif result.success:
        logger.info("%s", result.summary)
    else:
        logger.error("%s", result.summary)


def _resolve_config(dry_run: bool) -> AppConfig:
    config = get_app_config()
    if dry_run and not config.trading.dry_run:
        config = config.model_copy(update={"trading": config.trading.model_copy(update={"dry_run": True})})
    return config


def run(dry_run: bool = True) -> CycleResult:
    service = build_service(_resolve_config(dry_run))
    result = service.run_cycle()
    _report(result)
    return result


async def run_loop(
    dry_run: bool,
    interval_seconds: Optional[float] = None,
    max_cycles: Optional[int] = None,
) -> None:
    config = _resolve_config(dry_run)
    service = build_service(config)
    scheduler_config = config.scheduler
    if interval_seconds is not None:
        scheduler_config = SchedulerConfig(
            interval_seconds=interval_seconds,
            run_on_start=config.scheduler.run_on_start,
        )
    scheduler = HousekeepingScheduler(service, config=scheduler_config, on_result=_report)
    try:
        await scheduler.run_forever(max_cycles=max_cycles)
    finally:
        await scheduler.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the mindshare momentum trader")
    parser.add_argument("--dry-run", action="store_true", default=False)
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Run housekeeping cycles continuously with the supplied interval.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between cycles when --loop is enabled (default: scheduler.interval_seconds)",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Optional limit to the number of loop iterations to execute.",
    )
    args = parser.parse_args()
    if args.loop:
        try:
            asyncio.run(run_loop(args.dry_run, args.interval, args.max_cycles))
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down")
    else:
        result = run(dry_run=args.dry_run)
        if not result.success:
            raise SystemExit(1)


if __name__ == "__main__":
    main()


__all__ = ["build_service", "main", "run", "run_loop"]
