from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import Config, get_config
from .log import configure_logging
from .models import ContentType, FetchRequest, FetchResponse
from .service import FetchService

logger = structlog.get_logger(__name__)


def create_app(service: Optional[FetchService] = None, config: Optional[Config] = None) -> FastAPI:
    config = config or get_config()
    service = service or FetchService.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("webfetch_started")
        try:
            yield
        finally:
            await service.aclose()
            logger.info("webfetch_stopped")

    app = FastAPI(title="webfetch", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
            for error in exc.errors()
        )
        logger.warning("invalid_request", path=request.url.path, errors=errors)
        body = FetchResponse.error(service.translate('errors.invalid_request', {'error': errors}), kind="validation")
        return JSONResponse(status_code=422, content=body.to_dict())

    @app.post("/fetch/{content_type}")
    async def fetch(content_type: ContentType, request: FetchRequest):
        response = await service.fetch(request, content_type)
        return JSONResponse(content=response.to_dict())

    @app.post("/browser/close")
    async def close_browser():
        response = await service.close_browser()
        return JSONResponse(content=response.to_dict())

    @app.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "browserRunning": service.sessions.is_running,
            "storedChunkSets": len(service.chunk_store),
        }

    return app


def run() -> None:
    """Start the HTTP server with settings from config.yaml, .env and the environment."""
    load_dotenv()
    config = get_config()
    configure_logging(config.logging.get('level', 'INFO'), config.debug)
    api_cfg = config.api
    logger.info("starting_server", host=api_cfg.get('host'), port=api_cfg.get('port'))
    uvicorn.run(create_app(config=config), host=api_cfg.get('host', '127.0.0.1'), port=int(api_cfg.get('port', 8000)))
