import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vidrelay.api import extract, health, relay, resolve
from vidrelay.config.settings import config
from vidrelay.core.errors import AppError
from vidrelay.core.logging import RequestIdMiddleware, setup_logging
from vidrelay.core.state import state
from vidrelay.i18n import i18n
from vidrelay.infra.rate_limit import rate_limiter
from vidrelay.infra.redis import close_redis, init_redis
from vidrelay.services.extractor import extractor
from vidrelay.utils.locale import get_locale

logger = logging.getLogger("vidrelay")

app = FastAPI(
    title=config.api.title,
    description=config.api.description,
    version=config.api.version,
    docs_url="/docs" if config.api.debug else None,
    redoc_url=None
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "Content-Length", "Retry-After", "X-Request-ID"],
)
app.add_middleware(RequestIdMiddleware)


def _error_response(message: str, status_code: int, headers=None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return _error_response(exc.message, exc.status_code, exc.headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(str(exc.detail), exc.status_code, getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    locale = get_locale(request.headers.get("accept-language"))
    logger.info(f"Rejected request body: {exc.errors()}")
    return _error_response(i18n.get("error.invalid_request", locale=locale), 400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    locale = get_locale(request.headers.get("accept-language"))
    logger.exception(f"Unhandled error on {request.url.path}")
    return _error_response(i18n.get("error.server_error", locale=locale), 500)


# Routes
app.include_router(health.router, tags=["Health"])
app.include_router(resolve.router, tags=["Resolve"])
app.include_router(relay.router, tags=["Relay"])
app.include_router(extract.router, tags=["Extract"])


@app.on_event("startup")
async def startup_event():
    setup_logging(config.logging)
    state.redis = await init_redis()
    state.extractor_version = await extractor.version()
    rate_limiter.start_sweeper()
    logger.info(f"{config.api.title} {config.api.version} ready (yt-dlp {state.extractor_version})")


@app.on_event("shutdown")
async def shutdown_event():
    await rate_limiter.stop_sweeper()
    if state.http_client is not None:
        await state.http_client.aclose()
        state.http_client = None
    await close_redis()
