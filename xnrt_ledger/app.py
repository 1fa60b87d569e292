import json
from datetime import datetime
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from xnrt_ledger.infra.config.settings import settings
from xnrt_ledger.infra.config.redis import close_redis_pool
from xnrt_ledger.infra.database import get_database_manager, get_session_factory
from xnrt_ledger.core.logger.logger import logger
from xnrt_ledger.api.router import admin, health, referrals, stakes, transactions, users, wallet
from xnrt_ledger.api.middleware.logging.request_logging import RequestLoggingMiddleware
from xnrt_ledger.core.exceptions.handler import ServiceError, GlobalErrorHandler


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
XNRT Ledger API - custodial balances for the XNRT platform.

## Services
- **Wallets**: Signed wallet-link challenges and per-user BSC deposit addresses
- **Deposits**: Automatic USDT deposit detection, user reports and admin review
- **Referrals**: Three-level commission on every credited deposit
- **Staking**: Fixed-term tiers with daily reward accrual
- **Withdrawals**: Fee-bearing withdrawal requests settled by admins

## Authentication
All endpoints except registration, tiers and health require JWT Bearer token authentication.
        """,
        version=settings.APP_VERSION,
        docs_url="/",
        redoc_url="/redoc"
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,  # 10 minutes
    )

    # Request logging middleware
    app.add_middleware(RequestLoggingMiddleware)

    # Add centralized error handlers
    app.add_exception_handler(ServiceError, GlobalErrorHandler.service_error_handler)
    app.add_exception_handler(HTTPException, GlobalErrorHandler.http_exception_handler)
    app.add_exception_handler(RequestValidationError, GlobalErrorHandler.validation_error_handler)
    app.add_exception_handler(Exception, GlobalErrorHandler.general_exception_handler)

    # Include routers
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(users.router, prefix="/api/v1")
    app.include_router(wallet.router, prefix="/api/v1")
    app.include_router(transactions.router, prefix="/api/v1")
    app.include_router(stakes.router, prefix="/api/v1")
    app.include_router(referrals.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    app.state.scanner = None
    app.state.scheduler = None

    @app.on_event("startup")
    async def startup_event():
        logger.info(json.dumps({
            "message": "Starting XNRT Ledger",
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION
        }))

        from xnrt_ledger.core.service.user.user_service import UserService

        session_factory = await get_session_factory()
        async with session_factory() as session:
            await UserService(session).ensure_house_account(settings.HOUSE_ACCOUNT_REFERRAL_CODE)

        from xnrt_ledger.core.scheduler import LedgerScheduler

        scanner = None
        if settings.AUTO_DEPOSIT:
            try:
                from xnrt_ledger.core.dependencies import build_chain_scanner
                scanner = await build_chain_scanner()
                app.state.scanner = scanner
            except Exception as e:
                logger.error("Failed to initialize deposit scanner on startup", extra={"error": str(e)}, exc_info=True)

        scheduler = LedgerScheduler(session_factory, scanner=scanner)
        scheduler.start()
        app.state.scheduler = scheduler

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info(json.dumps({
            "message": "Shutting down XNRT Ledger",
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION
        }))
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown()
        await get_database_manager().close()
        await close_redis_pool()

    return app
