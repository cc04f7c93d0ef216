#!/usr/bin/env python3
"""
Async scoring server for team CTF events.
Accepts submission and hint events over TCP (JSON lines) and HTTP, and
serves leaderboards, solve matrices and admin operations over a web API.
"""

import argparse
import asyncio
import logging
import os
from pathlib import Path

from flagrank.config import CompetitionConfig
from flagrank.logging_config import setup_logging
from flagrank.scoreboard import ScoreboardSystem

logger = logging.getLogger("flagrank.app")


async def main():
    """Main function with command line interface."""

    parser = argparse.ArgumentParser(
        description="CTF scoring engine with TCP event ingest and web API",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--socket-port",
        type=int,
        default=int(os.getenv("SOCKET_PORT", "8080")),
        help="TCP event ingest port (env: SOCKET_PORT)",
    )
    parser.add_argument(
        "--web-port",
        type=int,
        default=int(os.getenv("WEB_PORT", "8081")),
        help="Web API port (env: WEB_PORT)",
    )
    parser.add_argument(
        "--db",
        default=os.getenv("DB_PATH", "flagrank.db"),
        help="SQLite database file path (env: DB_PATH)",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_PATH", "flagrank_config.json"),
        help="Configuration file path (env: CONFIG_PATH)",
    )
    parser.add_argument(
        "--host",
        default=os.getenv("HOST", "0.0.0.0"),
        help="Host to bind servers to (env: HOST)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level; overrides the config file (env: LOG_LEVEL)",
    )
    parser.add_argument(
        "--roster",
        default=os.getenv("ROSTER_PATH"),
        help="JSON file of teams and levels to load at start (env: ROSTER_PATH)",
    )

    args = parser.parse_args()

    config_path = Path(args.config)

    if config_path.exists() and not config_path.is_file():
        setup_logging()
        logger.error("%s exists but is not a file", args.config)
        return

    config = CompetitionConfig(args.config)
    setup_logging(args.log_level or config.get("logging", "level"))

    system = ScoreboardSystem(
        host=args.host,
        port=args.socket_port,
        web_port=args.web_port,
        db_path=args.db,
        config=config,
    )

    await system.init_db()
    if args.roster:
        await system.load_roster(args.roster)
    await system.log_leaderboard()

    await system.run_both_servers()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Server interrupted")
