"""FastAPI application entry point."""
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from image_optimizer.api.routes import images_router, router
from image_optimizer.batch import BatchScheduler, BatchTicker
from image_optimizer.config import (
    ADMIN_TOKEN,
    CORS_ORIGINS,
    MEDIA_ROOT,
    RATE_LIMIT_REQUESTS,
    RATE_LIMIT_WINDOW,
    ConfigProvider,
    logger as config_logger,
)
from image_optimizer.conversion.converters import ConverterFactory, get_converter_factory
from image_optimizer.conversion.service import ConversionOrchestrator
from image_optimizer.db import KeyValueStore, init_db
from image_optimizer.errors import ErrorSink
from image_optimizer.media import MediaLibrary
from image_optimizer.security import RateLimiter
from image_optimizer.serving import ImageServer

logging.getLogger("uvicorn").setLevel(logging.INFO)


@dataclass
class Services:
    store: KeyValueStore
    config: ConfigProvider
    sink: ErrorSink
    factory: ConverterFactory
    orchestrator: ConversionOrchestrator
    media: MediaLibrary
    scheduler: BatchScheduler
    server: ImageServer
    limiter: RateLimiter
    admin_token: str = ""


def build_services(
    store: KeyValueStore,
    media_root: Path = MEDIA_ROOT,
    factory: Optional[ConverterFactory] = None,
    ticker: Optional[BatchTicker] = None,
    clock: Callable[[], float] = time.time,
    admin_token: str = ADMIN_TOKEN,
    **scheduler_options,
) -> Services:
    """Wire every component once. Tests pass their own store, factory, ticker and clock."""
    media_root = Path(media_root)
    media_root.mkdir(parents=True, exist_ok=True)
    config = ConfigProvider(store)
    sink = ErrorSink()
    factory = factory or get_converter_factory()
    orchestrator = ConversionOrchestrator(config, factory, store=store, sink=sink, media_root=media_root)
    media = MediaLibrary(media_root)
    scheduler = BatchScheduler(store, orchestrator, media, sink=sink, ticker=ticker, clock=clock, **scheduler_options)
    return Services(
        store=store,
        config=config,
        sink=sink,
        factory=factory,
        orchestrator=orchestrator,
        media=media,
        scheduler=scheduler,
        server=ImageServer(orchestrator, clock=clock),
        limiter=RateLimiter(RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW, clock=clock),
        admin_token=admin_token,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.services is None:
        app.state.services = build_services(init_db())
    services = app.state.services
    if not services.admin_token:
        config_logger.warning("ADMIN_TOKEN is not set; batch control routes are open")
    if services.scheduler.resume():
        config_logger.info("Resumed interrupted batch conversion")
    config_logger.info("Image optimizer API started (media root: %s)", services.media.root)
    yield
    services.scheduler.ticker.stop()
    config_logger.info("Image optimizer API shutting down")


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Image Optimizer API",
        description="Convert JPEG/PNG/GIF images to WebP and AVIF and serve the best format each client accepts.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(images_router)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from image_optimizer.config import HOST, PORT
    uvicorn.run("image_optimizer.main:app", host=HOST, port=PORT, reload=True)
