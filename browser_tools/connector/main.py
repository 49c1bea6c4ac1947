"""
Browser Tools connector: relays a browser tab's console, network and page state to
the local browser-tools server and executes its commands against that tab.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal

from .agent import ConnectorAgent
from .cdp import CdpError
from .config import ConnectorConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("browser_tools.connector")


def _apply_log_level() -> None:
    raw = (os.environ.get("BROWSER_TOOLS_LOG_LEVEL") or "").strip().upper()
    if not raw:
        return
    level = logging.getLevelName(raw)
    if isinstance(level, int):
        logging.getLogger().setLevel(level)
    else:
        logger.warning("ignoring unknown BROWSER_TOOLS_LOG_LEVEL=%s", raw)


async def _serve(config: ConnectorConfig) -> None:
    agent = ConnectorAgent(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(agent.stop()))
    try:
        await agent.run()
    finally:
        await agent.stop()


def main() -> int:
    _apply_log_level()
    config = ConnectorConfig.from_env()
    settings = config.settings
    logger.info(
        "starting connector relay=%s devtools=%s:%s",
        settings.server_base_url,
        config.cdp_host,
        config.cdp_port,
    )
    try:
        asyncio.run(_serve(config))
    except CdpError as exc:
        logger.error("browser DevTools unavailable: %s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
