from __future__ import annotations

import argparse
import asyncio

from relayq.core.logging import configure_logging
from relayq.services.channels import CHANNELS
from relayq.services.scheduler import run_processing_loop, run_retry_loop


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the relayq processing and retry loops")
    parser.add_argument(
        "--channel",
        action="append",
        choices=sorted(CHANNELS),
        help="Channel to process (repeatable); defaults to all channels",
    )
    return parser


async def _main(channels: list[str] | None) -> None:
    # Run delivery without Redis/arq, e.g. for single-node deployments.
    configure_logging()
    await asyncio.gather(
        run_processing_loop(channels),
        run_retry_loop(channels),
    )


if __name__ == "__main__":
    args = _build_parser().parse_args()
    asyncio.run(_main(args.channel))
