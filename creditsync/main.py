import logging
import uuid

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from mangum import Mangum
from starlette.middleware.cors import CORSMiddleware

from creditsync import containers
from creditsync.config import settings
from creditsync.core.exception_handlers import (
    handle_base_api_exception,
    handle_http_exception,
    handle_unexpected_error,
    handle_validation_error,
)
from creditsync.core.exceptions import BaseAPIException
from creditsync.core.logging_middleware import LoggingMiddleware
from creditsync.database.session import release_request_session, request_scope
from creditsync.logging_config import setup_logging
from creditsync.providers.processor import configure_stripe
from creditsync.routers import (
    admin_reconciliation_router,
    credits_router,
    health_router,
    webhook_router,
)

load_dotenv("creditsync/.env")
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)
    container = containers.Container()
    app.container = container  # type: ignore

    configure_stripe(container.config.config())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    @app.middleware("http")
    async def bind_db_session(request: Request, call_next):
        # 요청마다 독립 세션 (동시 요청끼리 세션을 공유하지 않음)
        token = request_scope.set(uuid.uuid4().hex)
        try:
            return await call_next(request)
        finally:
            release_request_session()
            request_scope.reset(token)

    app.add_exception_handler(BaseAPIException, handle_base_api_exception)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(health_router.router)
    app.include_router(webhook_router.router)
    app.include_router(credits_router.router)
    app.include_router(admin_reconciliation_router.router)

    logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")
    return app


app = create_app()

handler = Mangum(app)
