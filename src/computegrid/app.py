"""
ASGI application.

    uvicorn computegrid.app:app

or `computegrid serve`, which also configures logging and creates the schema.
"""

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from computegrid.api import install_error_handlers, router
from computegrid.config import GridConfig, configure_logging
from computegrid.service import GridService
from computegrid.version import __version__

logger = logging.getLogger(__name__)


def create_app(service: Optional[GridService] = None, config: Optional[GridConfig] = None) -> FastAPI:
    if service is None:
        service = GridService(config or GridConfig.from_env())
        service.init_db()

    app = FastAPI(title="Compute Grid", version=__version__)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=service.config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(app)
    app.include_router(router)
    return app


def serve(config: Optional[GridConfig] = None, host: Optional[str] = None, port: Optional[int] = None) -> None:
    config = config or GridConfig.from_env()
    configure_logging(config.log_level, config.log_file)

    app = create_app(config=config)
    host = host or config.api_host
    port = port or config.api_port
    logger.info(f"Compute grid API v{__version__} listening on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)


def __getattr__(name):
    # `uvicorn computegrid.app:app` builds the app from the environment on first access
    if name == "app":
        return create_app()
    raise AttributeError(name)
