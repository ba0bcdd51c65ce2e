"""Entry point for `python -m vigil`."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv


async def _serve(settings) -> None:
    from vigil.runtime import build_runtime

    log = logging.getLogger("vigil")
    runtime = await build_runtime(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt.
            pass

    await runtime.start()
    log.info("Vigil running. Press Ctrl+C to stop.")
    try:
        await stop.wait()
    finally:
        log.info("Shutting down...")
        await runtime.stop()
        log.info("Final status: %s", runtime.status())


def main() -> None:
    from vigil.config import ENV_PATHS

    # Load .env from canonical locations before anything else.
    for path in ENV_PATHS:
        load_dotenv(path)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    log = logging.getLogger("vigil")

    # Validate config early
    try:
        from vigil.config import get_settings

        settings = get_settings()
    except Exception as e:
        log.error("Configuration error: %s", e)
        log.error("")
        log.error("  How to fix:")
        log.error("  1. Edit config/.env (or set environment variables)")
        log.error("  2. Ensure OPENROUTER_API_KEY is set")
        log.error("")
        sys.exit(1)

    logging.getLogger().setLevel(settings.LOG_LEVEL)
    log.info("Starting Vigil...")
    log.info("Reasoning model: %s", settings.REASONING_MODEL)
    log.info("Embedding model: %s (%s)", settings.EMBEDDING_MODEL, settings.EMBEDDING_BACKEND)

    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
