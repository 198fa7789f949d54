"""
Consensus API - request/response endpoints over ConsensusService

POST /consensus                        - Run consensus for a submission
GET  /consensus/summary                - Finalized submissions per confidence tier
GET  /cases/{case_id}                  - Vote case payload for voters
POST /votes                            - Cast a judgment vote
POST /votes/{case_id}/tally            - Tally a vote case
GET  /reviewers/{reviewer_id}/reliability
GET  /shadow-logs                      - Paginated shadow formula comparisons
GET  /shadow-logs/summary              - Per-formula delta statistics
"""
import os
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from scholarxp.persistence.store import ReviewStore
from scholarxp.policy.resolver import PolicyResolver
from scholarxp.service import ConsensusService, ServiceResult

router = APIRouter()


class ConsensusRequest(BaseModel):
    submissionId: str = Field(..., min_length=1)


class VoteRequest(BaseModel):
    caseId: str = Field(..., min_length=1)
    walletAddress: str = Field(..., min_length=1)
    voteXp: int = Field(..., ge=0)
    signature: str = Field(..., min_length=1)


def _service(request: Request) -> ConsensusService:
    return request.app.state.consensus_service


def _unwrap(result: ServiceResult) -> dict[str, Any]:
    """Return result data or raise the matching HTTP error."""
    if result.success:
        return result.data
    detail = "; ".join(result.errors) or "Request failed"
    if result.data.get("not_found"):
        raise HTTPException(status_code=404, detail=detail)
    if result.data.get("rejected"):
        raise HTTPException(status_code=409, detail=detail)
    if result.data.get("retryable"):
        raise HTTPException(status_code=503, detail=detail)
    raise HTTPException(status_code=400, detail=detail)


@router.post("/consensus")
def calculate_consensus(body: ConsensusRequest, request: Request):
    """
    Finalize or escalate a submission.

    Returns {finalXp, confidence, status} or {escalated: true, caseId}.
    Submissions without enough reviews come back as status "deferred".
    """
    return _unwrap(_service(request).calculate_consensus(body.submissionId))


@router.get("/consensus/summary")
def consensus_summary(request: Request):
    return _unwrap(_service(request).consensus_summary())


@router.get("/cases/{case_id}")
def case_details(case_id: str, request: Request):
    return _unwrap(_service(request).case_details(case_id))


@router.post("/votes")
def cast_vote(body: VoteRequest, request: Request):
    """
    Record a vote. The signature is verified before it reaches this
    service; repeat wallets, closed cases and values outside the
    disputed pair are rejected with 409.
    """
    return _unwrap(_service(request).cast_vote(
        body.caseId, body.walletAddress, body.voteXp, body.signature,
    ))


@router.post("/votes/{case_id}/tally")
def tally_votes(case_id: str, request: Request):
    return _unwrap(_service(request).tally_votes(case_id))


@router.get("/reviewers/{reviewer_id}/reliability")
def reviewer_reliability(reviewer_id: str, request: Request):
    return _unwrap(_service(request).reliability_score(reviewer_id))


@router.get("/shadow-logs")
def shadow_logs(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    return _unwrap(_service(request).shadow_logs(limit=limit, offset=offset))


@router.get("/shadow-logs/summary")
def shadow_summary(request: Request):
    return _unwrap(_service(request).shadow_summary())


def create_app(service: Optional[ConsensusService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Without an explicit service, configuration is read from
    SCHOLARXP_CONFIG_DIR (default ./config) and the database from
    SCHOLARXP_DB (default in-memory).
    """
    if service is None:
        config_dir = Path(os.getenv("SCHOLARXP_CONFIG_DIR", "config"))
        resolver = PolicyResolver.from_config_dir(config_dir)
        store = ReviewStore(os.getenv("SCHOLARXP_DB", ":memory:"))
        service = ConsensusService(resolver, store=store)

    app = FastAPI(title="ScholarXP Consensus")
    app.state.consensus_service = service
    app.include_router(router)
    return app
