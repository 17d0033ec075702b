"""
Main entry point for StreamBot.

Loads configuration, sets up logging, starts the bot and runs until
interrupted.
"""

import argparse
import logging
import signal
import sys
import time
from typing import List, Optional

from streambot.app.bot import StreamBot
from streambot.app.log_setup import configure_logging
from streambot.config import load_config

logger = logging.getLogger(__name__)


def main(args: Optional[List[str]] = None) -> None:
    """
    Main entry point for StreamBot.

    Initializes components, starts the frontends and runs continuously.
    """
    parser = argparse.ArgumentParser(prog="streambot", description="Queue-driven media playback bot")
    parser.add_argument("--no-console", action="store_true", help="Do not read commands from stdin")
    options = parser.parse_args(args)

    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(config.log_level, config.log_file)

    logger.info("=" * 70)
    logger.info("StreamBot - Starting")
    logger.info("=" * 70)

    bot = StreamBot(config)
    shutdown_initiated = False

    # Set up signal handlers for graceful shutdown
    def signal_handler(sig, frame):
        nonlocal shutdown_initiated
        if shutdown_initiated:
            logger.debug("[BOT] Shutdown already in progress, ignoring duplicate signal")
            return
        shutdown_initiated = True
        signal_name = "SIGTERM" if sig == signal.SIGTERM else "SIGINT"
        logger.info(f"[BOT] Received {signal_name} signal - initiating graceful shutdown")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    console = not options.no_console and sys.stdin.isatty()
    try:
        bot.start(console=console)
        logger.info("[BOT] Running. Press Ctrl+C to stop.")
        while not shutdown_initiated and (bot.running or not console):
            time.sleep(0.1)
    except Exception as e:
        logger.error(f"[BOT] Error: {e}", exc_info=True)
        raise
    finally:
        bot.stop()


if __name__ == "__main__":
    main()
