"""
Agent Pipeline Application
===========================

Layers (initialized in dependency order, torn down in reverse):
  Telemetry   (structured logging, tracing, metrics)
  Storage     (Redis key-value store, SQL message store)
  Runtime     (response cache, dispatch queue, job drain, stream delivery)
  API         (FastAPI routes, exception handling)

The completion provider is an external collaborator; deployments pass one
to ``create_app``. Tests pass a fully built ``ResponsePipeline`` instead.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agent_pipeline.api.routes import agents, performance
from agent_pipeline.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from agent_pipeline.core.config import get_settings
from agent_pipeline.core.exceptions import PipelineException
from agent_pipeline.core.interfaces import CompletionProvider
from agent_pipeline.infra.cache import ResponseCache, close_redis_store, get_redis_store
from agent_pipeline.infra.persistence import (
    SqlMessageStore,
    create_engine,
    create_session_factory,
    init_models,
)
from agent_pipeline.infra.runtime import (
    InMemoryJobQueue,
    PriorityDispatchQueue,
    RedisPublisher,
    ResponsePipeline,
    StreamConfig,
    StreamDelivery,
)
from agent_pipeline.infra.telemetry import MetricsCollector, get_logger, setup_logging

logger = get_logger(__name__)

async def pipeline_exception_handler(request: Request, exc: PipelineException) -> JSONResponse:
    logger.warning("request_failed", error_code=exc.error_code, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

def create_app(
    provider: CompletionProvider | None = None,
    *,
    pipeline: ResponsePipeline | None = None,
    circuit_breaker: CircuitBreaker | None = None,
    drain_concurrency: int = 4,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        provider: Completion provider used to build the default pipeline.
        pipeline: Prebuilt pipeline (skips all infrastructure setup).
        circuit_breaker: Breaker exposed on ``/performance/circuits``.
        drain_concurrency: Workers draining queued jobs.
    """
    if provider is None and pipeline is None:
        raise ValueError("create_app needs a completion provider or a prebuilt pipeline")

    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if pipeline is not None:
            app.state.pipeline = pipeline
            app.state.circuit_breaker = circuit_breaker
            yield
            return

        # ==================== STARTUP ====================
        setup_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON, log_dir=settings.LOG_DIR)

        store = get_redis_store()
        metrics = MetricsCollector.from_settings(store)
        engine = create_engine(settings.DATABASE_URL)
        await init_models(engine)
        publisher = RedisPublisher.from_url(settings.REDIS_URL)
        breaker = circuit_breaker or CircuitBreaker(CircuitBreakerConfig.from_settings())
        jobs = InMemoryJobQueue()

        built = ResponsePipeline(
            cache=ResponseCache.from_settings(store, metrics),
            queue=PriorityDispatchQueue.from_settings(jobs, metrics),
            streamer=StreamDelivery(
                provider,
                publisher,
                SqlMessageStore(create_session_factory(engine)),
                metrics,
                circuit_breaker=breaker,
                config=StreamConfig.from_settings(),
            ),
            metrics=metrics,
        )
        app.state.pipeline = built
        app.state.circuit_breaker = breaker
        await jobs.start_drain(built.process_job, concurrency=drain_concurrency)
        logger.info("pipeline_started", environment=settings.ENVIRONMENT)

        yield

        # ==================== SHUTDOWN ====================
        await jobs.stop()
        await built.cache.flush_background()
        await publisher.close()
        await close_redis_store()
        await engine.dispose()
        logger.info("pipeline_stopped")

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.add_exception_handler(PipelineException, pipeline_exception_handler)
    app.include_router(agents.router)
    app.include_router(performance.router)
    return app
