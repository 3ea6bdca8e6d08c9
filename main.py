"""Main entry point for the application."""

import asyncio
import logging
import sys

from usage_agent.commands.account_commands import run_cli
from usage_agent.config import validate_config
from usage_agent.logging_setup import setup_logging

# Setup logging first
setup_logging()

# Get the main logger
logger = logging.getLogger(__name__)

# Validate configuration
validate_config()


def main() -> None:
    try:
        logger.info("Starting Claude usage agent")
        exit_code = asyncio.run(run_cli(sys.argv[1:]))
    except KeyboardInterrupt:
        logger.info("Interrupted; usage agent stopped.")
        exit_code = 0
    except Exception as e:
        logger.critical(f"Usage agent failed: {e}", exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
