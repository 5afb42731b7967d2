#!/usr/bin/env python3
"""
main.py — Deal Simulation Engine Entry Point

Long-running process that:
1. Loads settings from the environment (.env supported)
2. Opens the deal store, or falls back to a disabled engine
3. Runs the tick, deal-watcher and forecast loops
4. Serves the HTTP / websocket API on the same event loop

Usage:
    python main.py [--host 0.0.0.0] [--port 8086] [--db data/dealsim.db]

Environment:
    See .env.example for configuration.
"""

import argparse
import asyncio
import os
import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from api import app, set_engine
from broadcast import Broadcaster
from deal_engine import build_engine
from engine_config import EngineSettings

load_dotenv()


def setup_logging(log_level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    logger.add(
        "logs/dealsim.log",
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Deal simulation engine")
    parser.add_argument("--host", default=None, help="Bind host (default: DEALSIM_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: DEALSIM_PORT)")
    parser.add_argument("--db", default=None, help="SQLite path (default: DEALSIM_DB_PATH)")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> EngineSettings:
    env = dict(os.environ)
    if args.db:
        env["DEALSIM_DB_PATH"] = args.db
    if args.host:
        env["DEALSIM_HOST"] = args.host
    if args.port:
        env["DEALSIM_PORT"] = str(args.port)
    return EngineSettings.from_env(env)


async def serve(settings: EngineSettings) -> None:
    engine = build_engine(settings, Broadcaster())
    set_engine(engine)
    await engine.start()

    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    logger.info(f"Serving on http://{settings.host}:{settings.port} (engine enabled={engine.enabled})")
    try:
        await server.serve()
    finally:
        await engine.stop()


def main(argv=None) -> None:
    args = parse_args(argv)
    settings = load_settings(args)

    os.makedirs("logs", exist_ok=True)
    setup_logging(settings.log_level)

    if settings.db_path:
        db_dir = os.path.dirname(settings.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
