# src/oscwatch/main.py
import asyncio
import signal

import structlog
from dotenv import load_dotenv

from oscwatch.config import config_from_env
from oscwatch.context import build_context
from oscwatch.utils.log import configure_logging

log = structlog.get_logger()


async def main():
    load_dotenv()
    cfg = config_from_env()  # raises ConfigError if push credentials are missing
    configure_logging(cfg.log_level, cfg.log_json)

    ctx = await build_context(cfg)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    try:
        migrated = await ctx.store.migrate_legacy_schema()
        log.info(
            "engine_starting",
            migrated_rows=migrated,
            cycle_interval_s=cfg.scheduler.cycle_interval_s,
            push=ctx.dispatcher is not None,
            secondary=cfg.provider.use_secondary,
        )
        await ctx.scheduler.start()
        await stop.wait()
    finally:
        log.info("engine_stopping")
        await ctx.aclose()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
