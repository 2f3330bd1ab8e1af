from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import structlog
import time
from contextlib import asynccontextmanager

from errors import LedgerStorageError
from models import (
    AccountSnapshot,
    BatchResponse,
    ErrorResponse,
    HealthResponse,
    Outcome,
    RawRecord,
    RejectionReason,
    TransactionEvent,
)
from services import TransactionProcessor, get_transaction_processor
from repositories import LedgerRepository, get_ledger_repository, reset_repositories
from config import get_settings
from logging_config import configure_logging

settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

REJECTION_STATUS = {
    RejectionReason.malformed_record: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RejectionReason.insufficient_funds: status.HTTP_400_BAD_REQUEST,
    RejectionReason.unknown_transaction: status.HTTP_404_NOT_FOUND,
    RejectionReason.already_disputed: status.HTTP_409_CONFLICT,
    RejectionReason.no_open_dispute: status.HTTP_409_CONFLICT,
    RejectionReason.duplicate_transaction_id: status.HTTP_409_CONFLICT,
    RejectionReason.account_locked: status.HTTP_423_LOCKED,
}


class EventRejected(HTTPException):
    def __init__(self, outcome: Outcome):
        super().__init__(status_code=REJECTION_STATUS[outcome.reason], detail=outcome.detail)
        self.error_code = outcome.reason.value


# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Payments Ledger API", storage_backend=settings.storage_backend)
    yield
    reset_repositories()
    logger.info("Shutting down Payments Ledger API")


app = FastAPI(
    title=settings.app_name,
    description="Per-customer ledger of deposits, withdrawals, disputes, resolutions and chargebacks",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response


# Dependency injection
def get_processor(ledger: LedgerRepository = Depends(get_ledger_repository)) -> TransactionProcessor:
    return get_transaction_processor(ledger, diagnostics=settings.enable_diagnostics)


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger statistics"
)
async def health_check(ledger: LedgerRepository = Depends(get_ledger_repository)):
    try:
        return HealthResponse(
            status="healthy",
            accounts_count=ledger.get_accounts_count(),
            transfers_count=ledger.get_transfers_count()
        )
    except LedgerStorageError as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )


# Handlers are async and call the processor directly, so events are applied
# one at a time in arrival order on the event loop.
@app.post(
    "/transactions",
    response_model=Outcome,
    status_code=status.HTTP_201_CREATED,
    summary="Apply Event",
    description="Apply a deposit, withdrawal, dispute, resolve or chargeback to a customer's account",
    responses={
        201: {"description": "Event applied"},
        400: {"description": "Insufficient funds"},
        404: {"description": "Referenced transaction not found"},
        409: {"description": "Duplicate transaction, dispute or resolution"},
        422: {"description": "Malformed event"},
        423: {"description": "Account locked"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Internal server error"}
    }
)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def create_transaction(
    request: Request,
    event: TransactionEvent,
    processor: TransactionProcessor = Depends(get_processor)
):
    outcome = processor.apply(event)
    if not outcome.accepted:
        logger.warning(
            "Event rejected",
            reason=outcome.reason.value,
            detail=outcome.detail,
            client=event.client,
            tx=event.tx
        )
        raise EventRejected(outcome)
    return outcome


@app.post(
    "/transactions/batch",
    response_model=BatchResponse,
    summary="Apply Events",
    description="Apply raw event records in order; malformed and rejected records are reported, not raised"
)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def create_transactions(
    request: Request,
    records: List[RawRecord],
    processor: TransactionProcessor = Depends(get_processor)
):
    outcomes = [processor.process_record(record) for record in records]
    logger.info(
        "Batch applied",
        accepted=processor.accepted_count,
        rejected=processor.rejected_count
    )
    return BatchResponse(
        accepted=processor.accepted_count,
        rejected=processor.rejected_count,
        outcomes=outcomes
    )


@app.get(
    "/accounts",
    response_model=List[AccountSnapshot],
    summary="List Accounts",
    description="Snapshots of every account, ascending by client id"
)
async def list_accounts(processor: TransactionProcessor = Depends(get_processor)):
    return processor.snapshots()


@app.get(
    "/accounts/{client_id}",
    response_model=AccountSnapshot,
    summary="Get Account",
    responses={404: {"description": "Account not found"}}
)
async def get_account(client_id: int, processor: TransactionProcessor = Depends(get_processor)):
    snapshot = processor.get_snapshot(client_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return snapshot


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(ErrorResponse(
            detail=str(exc.detail),
            error_code=getattr(exc, "error_code", f"HTTP_{exc.status_code}")
        )),
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=jsonable_encoder(ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ))
    )


@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
