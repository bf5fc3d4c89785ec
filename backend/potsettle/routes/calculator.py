"""Stateless settlement calculator route handlers.

These endpoints work on net positions supplied in the request and touch
no stored session.

Endpoints:
    POST /api/settlements/optimize       -- Optimized settlement with proof.
    POST /api/settlements/alternatives   -- Scored alternative plans.
    POST /api/proofs/verify              -- Re-verify an exported proof.
    POST /api/proofs/render              -- Plain-text rendering of a proof.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from potsettle.models.comparison import AlternativeComparison
from potsettle.models.positions import NetPosition
from potsettle.models.proof import MathematicalProof, VerificationResult
from potsettle.models.settlement import OptimizedSettlement
from potsettle.services.comparator import compare_alternatives
from potsettle.services.proof_engine import render_proof_text, verify_proof
from potsettle.services.settlement_optimizer import optimize_settlement

logger = logging.getLogger("potsettle.routes.calculator")

router = APIRouter(tags=["Calculator"])


class NetPositionsRequest(BaseModel):
    """Request body carrying raw net positions."""
    session_id: Optional[str] = None
    net_positions: list[NetPosition] = Field(default_factory=list)


class CompareRequest(NetPositionsRequest):
    weights: Optional[dict[str, float]] = None


@router.post(
    "/settlements/optimize",
    response_model=OptimizedSettlement,
    summary="Optimize a settlement for raw net positions",
)
async def optimize(body: NetPositionsRequest) -> OptimizedSettlement:
    return optimize_settlement(body.net_positions, session_id=body.session_id)


@router.post(
    "/settlements/alternatives",
    response_model=AlternativeComparison,
    summary="Compare alternative plans for raw net positions",
)
async def alternatives(body: CompareRequest) -> AlternativeComparison:
    try:
        return compare_alternatives(
            body.net_positions, session_id=body.session_id, weights=body.weights
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )


@router.post(
    "/proofs/verify",
    response_model=VerificationResult,
    summary="Verify an exported mathematical proof",
)
async def verify(proof: dict[str, Any]) -> VerificationResult:
    """Recompute every check of a proof. Always answers 200; see ``is_valid``."""
    result = verify_proof(proof)
    logger.info(
        "Verified proof %s: valid=%s", result.proof_id, result.is_valid
    )
    return result


@router.post(
    "/proofs/render",
    response_class=PlainTextResponse,
    summary="Render a proof as plain text",
)
async def render(proof: MathematicalProof) -> str:
    return render_proof_text(proof)
