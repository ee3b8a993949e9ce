"""FastAPI application for database operations."""

import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from dbops.lib.config import load_config
from dbops.lib.database import create_store_engine
from dbops.lib.distributed_tracing import set_correlation_id
from dbops.lib.metrics import record_request_duration
from dbops.lib.structured_logger import configure_logging, log_request
from dbops.routers import router
from dbops.services.database_manager import DatabaseManager

# Paths left out of request metrics to reduce noise
UNMETERED_PATHS = ('/health', '/api/health', '/metrics')


def create_app(manager: Optional[DatabaseManager] = None) -> FastAPI:
  """Build the application.

  Args:
      manager: Pre-built DatabaseManager (tests). When omitted the lifespan
          builds one from the environment, initializes it and disposes of
          its engine on shutdown.

  Returns:
      Configured FastAPI application
  """

  @asynccontextmanager
  async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    if manager is not None:
      yield
      return

    configure_logging()
    config = load_config()
    engine = create_store_engine(config.database_url)
    app.state.database_manager = DatabaseManager(engine, config)
    app.state.database_manager.initialize()
    try:
      yield
    finally:
      engine.dispose()

  app = FastAPI(
    title='Database Operations API',
    description='Query performance, backups and health of the embedded application store',
    version='0.1.0',
    lifespan=lifespan,
  )
  if manager is not None:
    app.state.database_manager = manager

  @app.middleware('http')
  async def add_correlation_id(request: Request, call_next):
    """Inject a correlation ID and record request metrics.

    - Extracts X-Correlation-ID header or generates new UUID
    - Adds X-Correlation-ID to response headers
    - Records request duration and logs the request
    """
    correlation_id = request.headers.get('X-Correlation-ID', str(uuid4()))
    set_correlation_id(correlation_id)
    request.state.correlation_id = correlation_id

    start_time = time.time()
    response = await call_next(request)
    duration_seconds = time.time() - start_time

    response.headers['X-Correlation-ID'] = correlation_id

    if request.url.path not in UNMETERED_PATHS:
      record_request_duration(
        endpoint=request.url.path,
        method=request.method,
        status=response.status_code,
        duration_seconds=duration_seconds,
      )
      log_request(
        endpoint=request.url.path,
        method=request.method,
        status_code=response.status_code,
        duration_ms=duration_seconds * 1000,
      )

    return response

  @app.get('/health')
  async def health_root():
    """Health check endpoint at root level (for load balancers)."""
    return {'status': 'healthy'}

  # Add /api/health for consistency with API structure
  @app.get('/api/health')
  async def health_api():
    """Health check endpoint under /api prefix."""
    return {'status': 'healthy'}

  @app.get('/metrics')
  async def metrics_root():
    """Prometheus metrics endpoint (for monitoring systems)."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

  app.include_router(router)
  return app


app = create_app()
