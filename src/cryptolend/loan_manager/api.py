"""
Lending API endpoints.

Identity is established upstream: the auth gateway forwards the caller's id
in X-User-Id (and optionally X-User-Email).
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from cryptolend import __version__
from cryptolend.config import PriceSource, settings
from cryptolend.health import (
    ComponentHealth,
    HealthChecker,
    HealthStatus,
    coingecko_health_check,
    create_health_endpoints,
    database_health_check,
    price_feed_health_check,
)
from cryptolend.logging import get_logger, trace_context
from cryptolend.pricing import PriceSnapshot
from cryptolend.shared import utcnow
from cryptolend.shared.errors import (
    AccessDeniedError, LendingError, LoanNotFoundError, PersistenceError,
    UserNotFoundError
)
from .models import (
    Capability, Loan, LoanApplication, LoanBalance, LoanWithUser,
    PaymentRequest, PlatformStats, Transaction, UserStats, UserWithStats
)
from .service import LendingService

logger = get_logger(__name__)

# Global service instance
lending_service: Optional[LendingService] = None
health_checker = HealthChecker("cryptolend")

# Everything not listed maps to 400
ERROR_STATUS_CODES = {
    LoanNotFoundError: 404,
    UserNotFoundError: 404,
    AccessDeniedError: 403,
    PersistenceError: 500,
}


def database_health() -> ComponentHealth:
    if lending_service is None:
        return ComponentHealth(
            name="database", status=HealthStatus.UNHEALTHY, message="Service not initialized"
        )
    return database_health_check(lending_service.storage)


def price_feed_health() -> ComponentHealth:
    if lending_service is None:
        return ComponentHealth(
            name="price_feed", status=HealthStatus.UNHEALTHY, message="Service not initialized"
        )
    return price_feed_health_check(
        lending_service.oracle.snapshot(),
        max_age_seconds=settings.price_feed.refresh_interval * 5,
    )


health_checker.register_check("database", database_health)
health_checker.register_check("price_feed", price_feed_health)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage service lifecycle."""
    global lending_service

    logger.info("Starting Lending API...")
    lending_service = LendingService()
    if settings.price_feed.source == PriceSource.COINGECKO:
        health_checker.register_check(
            "coingecko",
            lambda: coingecko_health_check(settings.price_feed.url, settings.monitoring.readiness_timeout),
        )

    await lending_service.start()
    yield
    await lending_service.stop()


app = FastAPI(title="cryptolend Lending API", version=__version__, lifespan=lifespan)

create_health_endpoints(app, health_checker)


@app.middleware("http")
async def trace_middleware(request: Request, call_next):
    """Tag every log line of a request with one trace id."""
    with trace_context(request.headers.get("X-Trace-Id")) as trace_id:
        response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        400,
    )
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} refused: {exc.kind}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_input", "message": "Invalid input data", "errors": errors},
    )


# Dependencies

def get_service() -> LendingService:
    if not lending_service:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return lending_service


def current_user_id(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    service: LendingService = Depends(get_service),
) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    service.identify(x_user_id, x_user_email)
    return x_user_id


def require(capability: Capability):
    """Dependency that admits only users holding a capability."""
    def dependency(
        user_id: str = Depends(current_user_id),
        service: LendingService = Depends(get_service),
    ) -> str:
        service.require_capability(user_id, capability)
        return user_id
    return dependency


# Service endpoints

@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Lending API",
        "version": __version__,
        "status": "active",
        "description": "Crypto-collateralized loans, payments and loan administration"
    }


@app.get("/status")
async def get_status(service: LendingService = Depends(get_service)):
    """Get service status."""
    return {
        "timestamp": utcnow().isoformat(),
        "service": "cryptolend",
        "status": "active" if service.running else "inactive",
        "current_state": service.get_current_state(),
    }


@app.get("/metrics")
async def get_metrics():
    """Expose Prometheus metrics."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/crypto-prices", response_model=PriceSnapshot)
async def get_crypto_prices(service: LendingService = Depends(get_service)):
    """Current collateral price snapshot."""
    return service.price_snapshot()


# Borrower endpoints

@app.post("/loans", response_model=Loan, status_code=201)
async def create_loan(
    application: LoanApplication,
    user_id: str = Depends(current_user_id),
    service: LendingService = Depends(get_service),
):
    """Apply for a loan against crypto collateral."""
    return await service.apply_for_loan(user_id, application)


@app.get("/loans", response_model=List[Loan])
async def list_loans(
    user_id: str = Depends(current_user_id),
    service: LendingService = Depends(get_service),
):
    """List the caller's loans, newest first."""
    return service.ledger.list_user_loans(user_id)


@app.get("/loans/{loan_id}", response_model=Loan)
async def get_loan(
    loan_id: str,
    user_id: str = Depends(current_user_id),
    service: LendingService = Depends(get_service),
):
    return service.ledger.get_loan(loan_id, user_id)


@app.get("/loans/{loan_id}/transactions", response_model=List[Transaction])
async def get_loan_transactions(
    loan_id: str,
    user_id: str = Depends(current_user_id),
    service: LendingService = Depends(get_service),
):
    return service.ledger.get_loan_transactions(loan_id, user_id)


@app.get("/loans/{loan_id}/balance", response_model=LoanBalance)
async def get_loan_balance(
    loan_id: str,
    user_id: str = Depends(current_user_id),
    service: LendingService = Depends(get_service),
):
    return service.ledger.get_loan_balance(loan_id, user_id)


@app.post("/loans/{loan_id}/payment")
async def make_payment(
    loan_id: str,
    request: PaymentRequest,
    user_id: str = Depends(current_user_id),
    service: LendingService = Depends(get_service),
) -> Dict[str, Any]:
    """Pay towards a loan."""
    result = await service.make_payment(loan_id, user_id, request.amount)
    return {
        "message": "Payment processed successfully",
        **result.model_dump(mode="json"),
    }


@app.get("/transactions", response_model=List[Transaction])
async def list_transactions(
    limit: int = 10,
    user_id: str = Depends(current_user_id),
    service: LendingService = Depends(get_service),
):
    """The caller's most recent transactions."""
    return service.ledger.list_user_transactions(user_id, limit=max(1, min(limit, 100)))


@app.get("/stats", response_model=UserStats)
async def get_user_stats(
    user_id: str = Depends(current_user_id),
    service: LendingService = Depends(get_service),
):
    return service.ledger.get_user_stats(user_id, service.price_snapshot())


# Admin endpoints

@app.get("/admin/stats", response_model=PlatformStats)
async def get_platform_stats(
    admin_id: str = Depends(require(Capability.VIEW_PLATFORM_STATS)),
    service: LendingService = Depends(get_service),
):
    return service.ledger.get_platform_stats()


@app.get("/admin/loans", response_model=List[LoanWithUser])
async def list_all_loans(
    admin_id: str = Depends(require(Capability.MANAGE_LOANS)),
    service: LendingService = Depends(get_service),
):
    return service.ledger.list_all_loans()


@app.get("/admin/users", response_model=List[UserWithStats])
async def list_users(
    admin_id: str = Depends(require(Capability.MANAGE_USERS)),
    service: LendingService = Depends(get_service),
):
    return service.ledger.list_users_with_stats()


@app.post("/admin/loans/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    admin_id: str = Depends(require(Capability.MANAGE_LOANS)),
    service: LendingService = Depends(get_service),
):
    loan = await service.approve_loan(loan_id)
    logger.info(f"Admin {admin_id} approved loan {loan_id}")
    return {"message": "Loan approved successfully", "loan": loan.model_dump(mode="json")}


@app.post("/admin/loans/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    admin_id: str = Depends(require(Capability.MANAGE_LOANS)),
    service: LendingService = Depends(get_service),
):
    loan = await service.reject_loan(loan_id)
    logger.info(f"Admin {admin_id} rejected loan {loan_id}")
    return {"message": "Loan rejected successfully", "loan": loan.model_dump(mode="json")}


@app.post("/admin/loans/{loan_id}/default")
async def default_loan(
    loan_id: str,
    admin_id: str = Depends(require(Capability.MANAGE_LOANS)),
    service: LendingService = Depends(get_service),
):
    loan = await service.mark_defaulted(loan_id)
    logger.info(f"Admin {admin_id} marked loan {loan_id} as defaulted")
    return {"message": "Loan marked as defaulted", "loan": loan.model_dump(mode="json")}


@app.post("/admin/overdue-sweep")
async def run_overdue_sweep(
    admin_id: str = Depends(require(Capability.MANAGE_LOANS)),
    service: LendingService = Depends(get_service),
):
    """Default every active loan past its due date now."""
    defaulted = await service.run_overdue_sweep()
    return {"defaulted": [loan.id for loan in defaulted], "count": len(defaulted)}


@app.post("/admin/users/{user_id}/suspend")
async def suspend_user(
    user_id: str,
    admin_id: str = Depends(require(Capability.MANAGE_USERS)),
    service: LendingService = Depends(get_service),
):
    service.ledger.suspend_user(user_id)
    logger.info(f"Admin {admin_id} suspended user {user_id}")
    return {"message": "User suspended successfully"}
