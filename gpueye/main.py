import asyncio
import logging
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.concurrency import asynccontextmanager

from . import __version__, api, config
from .monitor import MonitoringEngine
from .ssh_utils import RemoteExecutor, build_executor

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_TIMEOUT_SEC = 60


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


def create_app(settings: config.AppConfig | None = None, executor: RemoteExecutor | None = None) -> FastAPI:
    """Build the application around a monitoring engine for ``settings.hosts``."""
    settings = settings or config.settings
    engine = MonitoringEngine(
        executor=executor or build_executor(settings),
        interval=settings.refresh_interval_sec,
    )

    # --- Lifespan Event Handler ---
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Application startup: handing %d configured host(s) to the engine.", len(settings.hosts))
        # Starts polling on its own when at least one host is valid
        app.state.engine.set_hosts(settings.hosts)

        try:
            yield
        finally:
            logger.info("Application shutdown: stopping monitoring...")
            try:
                await asyncio.wait_for(app.state.engine.aclose(), timeout=SHUTDOWN_DRAIN_TIMEOUT_SEC)
            except TimeoutError:
                logger.warning("In-flight poll cycle did not finish within %s seconds.", SHUTDOWN_DRAIN_TIMEOUT_SEC)

    app = FastAPI(
        title=settings.page_title,
        description="Monitors GPUs of configured hosts via SSH.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.include_router(api.router)
    return app


configure_logging(config.settings.log_level)
app = create_app()


# Usually, you run the app using: uvicorn gpueye.main:app
# This block allows running `python -m gpueye.main` directly.
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Uvicorn server...")
    uvicorn.run("gpueye.main:app", host=config.settings.server_host, port=config.settings.server_port)
