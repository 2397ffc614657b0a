# main.py

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
import models
from blockchain_service import BlockchainService
from errors import AppError
from routers import auth, backup, contacts, developer, developer_dashboard, transactions, wallets, whitelabel
from webhook_service import WebhookDispatcher

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# --- 异常处理：统一返回 {success: false, error, message} ---

async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in error["loc"][1:]) or str(error["loc"][0]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={
        "success": False, "error": "validation_error", "message": "Validation failed", "details": details,
    })


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(status_code=409, content={
        "success": False, "error": "conflict", "message": "Resource already exists",
    })


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, headers=getattr(exc, "headers", None), content={
        "success": False, "error": "http_error", "message": str(exc.detail),
    })


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = "Internal server error" if config.is_production() else f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content={"success": False, "error": "internal_error", "message": message})


def create_app(chain: BlockchainService = None, dispatcher: WebhookDispatcher = None,
               session_factory=None) -> FastAPI:
    """Build the API. Services not passed in are created at startup from config."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        models.Base.metadata.create_all(bind=database.engine)
        if app.state.chain is None:
            app.state.chain = BlockchainService()
        if app.state.dispatcher is None:
            app.state.dispatcher = WebhookDispatcher(session_factory or database.SessionLocal)
        yield
        app.state.dispatcher.close()

    app = FastAPI(title="USDC Wallet API", version="1.0.0", lifespan=lifespan)
    app.state.chain = chain
    app.state.dispatcher = dispatcher

    # --- CORS 中间件 ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
    app.include_router(wallets.router, prefix="/api/wallets", tags=["wallets"])
    app.include_router(transactions.router, prefix="/api/transactions", tags=["transactions"])
    app.include_router(contacts.router, prefix="/api/contacts", tags=["contacts"])
    app.include_router(backup.router, prefix="/api/backup", tags=["backup"])
    app.include_router(whitelabel.router, prefix="/api/whitelabel", tags=["whitelabel"])
    app.include_router(developer.router, prefix="/api/v1", tags=["developer"])
    app.include_router(developer_dashboard.router, prefix="/api/developer", tags=["developer"])

    @app.get("/health")
    def health():
        return {"status": "OK", "environment": config.ENVIRONMENT, "chain_id": config.BASE_CHAIN_ID}

    return app


app = create_app()


if __name__ == '__main__':
    uvicorn.run(app, host="0.0.0.0", port=8000)
