"""
Entrypoint: `python -m relaycord.main` or the `relaycord` console script.
"""

import asyncio
import logging
import os
import signal
from typing import Any

from relaycord.config.loader import get_config
from relaycord.discord.client import RelayBot


def setup_logging() -> None:
    if os.environ.get("DEBUG"):
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s: %(message)s")
        logging.getLogger("httpx").setLevel(logging.DEBUG)
        return
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s: %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    error = context.get("exception")
    logging.error("Unhandled error in event loop: %s", context.get("message"), exc_info=error)


async def run_bot(config: dict[str, Any]) -> None:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_loop_exception_handler)

    bot = RelayBot(config)
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
            pass

    async with bot:
        runner = asyncio.create_task(bot.start(config["bot_token"]))
        waiter = asyncio.create_task(stop.wait())
        done, _ = await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
        await bot.shutdown()
        waiter.cancel()
        if runner in done:
            runner.result()
        else:
            await asyncio.gather(runner, return_exceptions=True)


def main() -> None:
    setup_logging()
    config = get_config()
    try:
        asyncio.run(run_bot(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
