"""Main entrypoint initialising the praxisauth runtime."""
from __future__ import annotations

import asyncio

from praxisauth.cli.app import RuntimeContext, app, set_runtime
from praxisauth.core.config import AuthzConfigManager
from praxisauth.core.ui import ConsoleUI
from praxisauth.security.manager import AuthorizationManager
from praxisauth.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def _initialise_runtime() -> None:
    config_manager = AuthzConfigManager()
    settings = await config_manager.load()
    configure_logging(level=settings.logging.level, log_dir=settings.logging.directory)

    manager = AuthorizationManager(settings)
    context = RuntimeContext(
        settings=settings,
        config_manager=config_manager,
        manager=manager,
        ui=ConsoleUI(),
    )
    set_runtime(context)
    logger.info("Runtime initialised")


def main() -> None:
    asyncio.run(_initialise_runtime())
    app()


if __name__ == "__main__":  # pragma: no cover - CLI entry
    main()
