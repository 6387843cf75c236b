"""Run delivery passes outside the web process.

Intended for cron or a scheduler that fans out one invocation per partition::

    python -m herald.scripts.deliver --partition 0
    python -m herald.scripts.deliver --loop
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import asdict

from herald.core.settings import settings
from herald.services.coordinator import DeliveryCoordinator
from herald.services.http import get_http_client


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run federation delivery passes.")
    parser.add_argument(
        "--partition",
        type=int,
        default=None,
        help=f"Partition to drain (0-{settings.partition_count - 1}); all when omitted.",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running, polling for due work, until interrupted.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


async def run(partition: int | None, loop: bool) -> None:
    http = get_http_client()
    coordinator = DeliveryCoordinator(http)
    try:
        if loop:
            await coordinator.start()
            await asyncio.Event().wait()
        else:
            report = await coordinator.run_once(partition)
            print(asdict(report))
    finally:
        await coordinator.stop()
        await http.close()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.partition is not None and not 0 <= args.partition < settings.partition_count:
        raise SystemExit(f"--partition must be between 0 and {settings.partition_count - 1}")
    try:
        asyncio.run(run(args.partition, args.loop))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
