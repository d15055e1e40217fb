"""Service entry point: wires config, storage, dispatcher and HTTP routes.

``create_app()`` builds everything eagerly (the storage factory connects,
the strategies load their state) and returns a FastAPI app whose lifespan
starts the background loops and, on shutdown, drains the dispatcher and
disposes the storage handles.

Besides the admin routes, the app accepts classified messages on
``POST /dispatch`` for transports that prefer HTTP over calling the
dispatcher in-process.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from shopdesk import __version__, bus
from shopdesk.admin import register_admin_routes
from shopdesk.alerts import AlertLog
from shopdesk.config import ConfigManager, Settings
from shopdesk.dispatcher import create_dispatcher
from shopdesk.storage.base import BackendType
from shopdesk.storage.factory import Builder, DataServiceFactory

logger = logging.getLogger(__name__)


def create_app(
    config: ConfigManager | None = None,
    *,
    builders: dict[BackendType, Builder] | None = None,
    use_bus: bool = True,
) -> FastAPI:
    """Build the service. ``use_bus=False`` keeps events and alerts in-process."""
    config = config or ConfigManager()
    if use_bus:
        bus.configure(config.settings.redis_url)
    alerts = AlertLog(sink=bus.make_alert_sink() if use_bus else None)
    factory = DataServiceFactory(config, alerts=alerts, builders=builders)
    factory.current()
    sinks = [bus.make_processed_sink()] if use_bus else []
    dispatcher = create_dispatcher(config, factory, sinks=sinks)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if use_bus:
            bus.ensure_consumer_groups()
        factory.start()
        dispatcher.start()
        logger.info("shopdesk %s started (storage=%s)", __version__, factory.current_type)
        yield
        dispatcher.shutdown()
        factory.destroy()
        logger.info("shopdesk stopped")

    app = FastAPI(title="shopdesk", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.factory = factory
    app.state.dispatcher = dispatcher

    @app.post("/dispatch")
    def dispatch(message: dict[str, Any]):
        result = dispatcher.process(message)
        if not result.success:
            return JSONResponse(status_code=400, content=result.to_dict())
        return result.to_dict()

    @app.get("/health")
    def health():
        return {"status": "ok", "storage": factory.current_type, "version": __version__}

    register_admin_routes(app, dispatcher, factory)
    return app


def main() -> None:
    import uvicorn

    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(ConfigManager(settings)), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
