"""
FeatureGraph API Application
============================

Builds the FastAPI app around a SchedulerRegistry.

Usage:
    uvicorn api.app:app

Without an explicit registry, configuration comes from featuregraph.yaml and
the environment, features are stored in PostgreSQL when DATABASE_URL is set
(in memory otherwise), and tasks are run by the executor named in
FEATUREGRAPH_EXECUTOR ("module:factory"). The factory is called with
(project_id, project_path) and returns an AgentExecutor.
"""

from contextlib import asynccontextmanager
from typing import Optional
import importlib
import logging
import os

from fastapi import FastAPI

from api.feature_routes import configure_registry, router
from featuregraph import __version__
from featuregraph.config import Config
from featuregraph.database import FeatureDatabase
from featuregraph.errors import ValidationError
from featuregraph.logging_setup import setup_logging
from featuregraph.scheduling.registry import ExecutorFactory, SchedulerRegistry

logger = logging.getLogger(__name__)


def load_executor_factory(spec: str) -> ExecutorFactory:
    """Resolve a "module:attribute" reference to an executor factory."""
    module_name, _, attribute = spec.partition(':')
    if not module_name or not attribute:
        raise ValidationError(f"Executor factory must look like 'module:factory', got {spec!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)


def create_app(registry: Optional[SchedulerRegistry] = None, config: Optional[Config] = None) -> FastAPI:
    """
    Create the API application.

    Args:
        registry: Registry to serve (built from config on startup when omitted)
        config: Configuration (loaded from file/environment when omitted)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = None
        active = registry
        if active is None:
            cfg = config or Config.load()
            setup_logging(cfg.log_level, cfg.log_json)

            executor_spec = os.getenv('FEATUREGRAPH_EXECUTOR')
            if not executor_spec:
                raise ValidationError("FEATUREGRAPH_EXECUTOR is not set")

            repository = None
            if cfg.database_url:
                database = FeatureDatabase(cfg.database_url)
                await database.connect()
                await database.ensure_schema()
                repository = database

            active = SchedulerRegistry(
                cfg,
                executor_factory=load_executor_factory(executor_spec),
                repository=repository,
            )

        configure_registry(active)
        logger.info("FeatureGraph API started")
        try:
            yield
        finally:
            await active.close_all()
            configure_registry(None)
            if database is not None:
                await database.disconnect()
            logger.info("FeatureGraph API stopped")

    app = FastAPI(title="FeatureGraph", version=__version__, lifespan=lifespan)
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
