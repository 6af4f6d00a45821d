"""
FastAPI server for escrow fund release
Buyer, seller and admin actions plus health checks

The caller identity arrives in the X-User-Id header (set by the upstream
gateway after authentication). Service errors are mapped to HTTP status codes
in one place; handlers never catch them.
"""
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional
import logging

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import Config
from database import check_connection, create_tables
from models import DisputeOutcome
from services.auto_release_service import AutoReleaseService, auto_release_service
from services.dispute_resolution import DisputeResolutionService, dispute_resolution_service
from services.release_engine import ActorRole, ReleaseEngine, release_engine
from utils.exceptions import (
    DisputeFreezeError, EscrowReleaseError, ExternalGatewayError, InvalidRefundAmountError,
    InvalidTransitionError, LockInProgressError, ReleaseNotEligibleError, ResolutionInProgressError,
    TransactionNotFoundError, UnauthorizedActionError,
)

logger = logging.getLogger(__name__)


# Request/response models

class EligibilityResponse(BaseModel):
    eligible: bool
    reasons: List[str]


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    milestone_index: Optional[int] = None


class ResolveDisputeRequest(BaseModel):
    outcome: DisputeOutcome
    refund_amount: Optional[Decimal] = None


# Lifespan handler for FastAPI
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and start background jobs; stop them on shutdown"""
    create_tables()
    scheduler = None
    if Config.SCHEDULER_ENABLED:
        from jobs.scheduler import get_scheduler_instance
        scheduler = get_scheduler_instance()
        scheduler.start()
    logger.info("✅ Escrow release server started")

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info("🔄 Escrow release server shutting down")


app = FastAPI(
    title="Escrow Release Server",
    description="Fund release, milestone release and dispute resolution for escrow transactions",
    lifespan=lifespan,
)


# Dependencies (overridable in tests)

def get_release_engine() -> ReleaseEngine:
    return release_engine


def get_dispute_service() -> DisputeResolutionService:
    return dispute_resolution_service


def get_auto_release_service() -> AutoReleaseService:
    return auto_release_service


def require_admin(x_user_id: str = Header(...)) -> str:
    if not Config.is_admin(x_user_id):
        raise UnauthorizedActionError("Admin access required")
    return x_user_id


# Error mapping

ERROR_STATUS_CODES = (
    (TransactionNotFoundError, 404),
    (UnauthorizedActionError, 403),
    (InvalidTransitionError, 409),
    (DisputeFreezeError, 409),
    (LockInProgressError, 409),
    (ResolutionInProgressError, 409),
    (ReleaseNotEligibleError, 400),
    (InvalidRefundAmountError, 400),
    (ExternalGatewayError, 502),
)


def status_code_for(error: EscrowReleaseError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 400


@app.exception_handler(EscrowReleaseError)
async def escrow_error_handler(request: Request, exc: EscrowReleaseError):
    status_code = status_code_for(exc)
    content = {"success": False, "error": exc.message, "error_type": type(exc).__name__}
    if isinstance(exc, ReleaseNotEligibleError):
        content["reasons"] = exc.reasons
    if isinstance(exc, ExternalGatewayError):
        content["timed_out"] = exc.timed_out
    log = logger.error if status_code >= 500 else logger.info
    log(f"🚫 API_ERROR: {request.method} {request.url.path} -> {status_code}: {exc.message}")
    return JSONResponse(status_code=status_code, content=content)


# Routes

@app.get("/health")
async def health_check(engine: ReleaseEngine = Depends(get_release_engine)):
    """Health check with database status and release lock counters"""
    database_ok = check_connection()
    content = {
        "status": "healthy" if database_ok else "degraded",
        "service": "escrow-release",
        "database": database_ok,
        "release_locks": engine.lock_manager.get_metrics(),
    }
    return JSONResponse(content=content, status_code=200 if database_ok else 503)


@app.get("/transactions/{transaction_id}/release-eligibility", response_model=EligibilityResponse)
async def release_eligibility(
    transaction_id: str,
    milestone_index: Optional[int] = Query(None),
    engine: ReleaseEngine = Depends(get_release_engine),
):
    eligibility = engine.compute_release_eligibility(transaction_id, milestone_index, ActorRole.BUYER)
    return EligibilityResponse(eligible=eligibility.eligible, reasons=eligibility.reasons)


@app.post("/transactions/{transaction_id}/release")
async def release_transaction(
    transaction_id: str,
    x_user_id: str = Header(...),
    engine: ReleaseEngine = Depends(get_release_engine),
):
    """Buyer releases everything still held"""
    result = await engine.release_funds(transaction_id, None, actor_id=x_user_id, role=ActorRole.BUYER)
    return result.to_dict()


@app.post("/transactions/{transaction_id}/milestones/release-all")
async def release_all_milestones(
    transaction_id: str,
    x_user_id: str = Header(...),
    engine: ReleaseEngine = Depends(get_release_engine),
):
    result = await engine.release_all_milestones(transaction_id, actor_id=x_user_id, role=ActorRole.BUYER)
    return result.to_dict()


@app.post("/transactions/{transaction_id}/milestones/{milestone_index}/release")
async def release_milestone(
    transaction_id: str,
    milestone_index: int,
    x_user_id: str = Header(...),
    engine: ReleaseEngine = Depends(get_release_engine),
):
    result = await engine.release_funds(
        transaction_id, milestone_index, actor_id=x_user_id, role=ActorRole.BUYER
    )
    return result.to_dict()


@app.post("/transactions/{transaction_id}/proof")
async def submit_proof(
    transaction_id: str,
    x_user_id: str = Header(...),
    engine: ReleaseEngine = Depends(get_release_engine),
):
    tx = engine.submit_proof(transaction_id, x_user_id)
    return {
        "success": True,
        "transaction_id": transaction_id,
        "status": tx.status,
        "auto_release_at": tx.auto_release_at.isoformat() if tx.auto_release_at else None,
    }


@app.post("/transactions/{transaction_id}/revision")
async def request_revision(
    transaction_id: str,
    x_user_id: str = Header(...),
    engine: ReleaseEngine = Depends(get_release_engine),
):
    tx = engine.request_revision(transaction_id, x_user_id)
    return {"success": True, "transaction_id": transaction_id, "status": tx.status}


@app.post("/transactions/{transaction_id}/disputes")
async def open_dispute(
    transaction_id: str,
    body: DisputeRequest,
    x_user_id: str = Header(...),
    service: DisputeResolutionService = Depends(get_dispute_service),
):
    dispute_id = service.open_dispute(transaction_id, x_user_id, body.reason, body.milestone_index)
    return {"success": True, "transaction_id": transaction_id, "dispute_id": dispute_id}


@app.post("/admin/transactions/{transaction_id}/resolve-dispute")
async def resolve_dispute(
    transaction_id: str,
    body: ResolveDisputeRequest,
    admin_id: str = Depends(require_admin),
    service: DisputeResolutionService = Depends(get_dispute_service),
):
    result = await service.resolve_dispute(transaction_id, body.outcome, admin_id, body.refund_amount)
    return {
        "success": result.success,
        "transaction_id": result.transaction_id,
        "outcome": result.outcome,
        "refund_amount": str(result.refund_amount),
        "refund_reference": result.refund_reference,
        "seller_net": str(result.seller_net) if result.seller_net is not None else None,
        "transaction_status": result.transaction_status,
        "release": result.release.to_dict() if result.release else None,
        "error": result.error_message,
    }


@app.post("/admin/transactions/{transaction_id}/release")
async def admin_release(
    transaction_id: str,
    admin_id: str = Depends(require_admin),
    engine: ReleaseEngine = Depends(get_release_engine),
):
    """Retry the release of a RESOLVED transaction (or force an under-review one)"""
    result = await engine.release_funds(transaction_id, None, actor_id=admin_id, role=ActorRole.ADMIN)
    return result.to_dict()


@app.post("/admin/auto-release/run")
async def run_auto_release_now(
    admin_id: str = Depends(require_admin),
    service: AutoReleaseService = Depends(get_auto_release_service),
):
    """Run one auto-release pass immediately"""
    logger.info(f"⏰ MANUAL_AUTO_RELEASE: requested by {admin_id}")
    return await service.process_auto_release()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    uvicorn.run(app, host=Config.SERVER_HOST, port=Config.SERVER_PORT)
