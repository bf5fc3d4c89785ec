"""Session settlement route handlers.

Endpoints:
    POST /api/sessions/{session_id}/settlement                             -- Complete and settle.
    GET  /api/sessions/{session_id}/settlement/alternatives                -- Compare alternative plans.
    POST /api/sessions/{session_id}/settlement/alternatives/{option_id}    -- Settle with an alternative.
"""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Path, status
from pydantic import BaseModel, Field

from potsettle.dal.database import get_database
from potsettle.dal.players_dal import PlayerDAL
from potsettle.dal.sessions_dal import SessionDAL
from potsettle.dal.transactions_dal import TransactionDAL
from potsettle.models.comparison import AlternativeComparison
from potsettle.models.settlement import OptimizedSettlement
from potsettle.services.ledger_service import LedgerService

logger = logging.getLogger("potsettle.routes.settlement")

router = APIRouter(prefix="/sessions/{session_id}/settlement", tags=["Settlement"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_service() -> LedgerService:
    """Build a LedgerService wired to the current database."""
    db = get_database()
    return LedgerService(
        session_dal=SessionDAL(db),
        player_dal=PlayerDAL(db),
        transaction_dal=TransactionDAL(db),
    )


# ---------------------------------------------------------------------------
# Pydantic request schemas
# ---------------------------------------------------------------------------

class SettleSessionRequest(BaseModel):
    """Request body for settling a session."""
    final_chip_values: dict[str, Any] = Field(
        default_factory=dict,
        description="Chip value still held by each active player, keyed by player id.",
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=OptimizedSettlement,
    summary="Complete the session and compute its settlement",
)
async def settle_session(
    body: SettleSessionRequest | None = None,
    session_id: str = Path(...),
) -> OptimizedSettlement:
    """Compute the authoritative greedy settlement and mark the session completed.

    Fails with 409 if the ledger does not net to zero or an active player
    has no final chip value.
    """
    service = _get_service()
    final_values = body.final_chip_values if body else {}
    return await service.settle_session(session_id, final_values)


@router.get(
    "/alternatives",
    response_model=AlternativeComparison,
    summary="Compare alternative settlement plans",
)
async def compare_alternatives(session_id: str = Path(...)) -> AlternativeComparison:
    """Score every settlement algorithm for a session whose players have all cashed out."""
    service = _get_service()
    return await service.compare_session_alternatives(session_id)


@router.post(
    "/alternatives/{option_id}",
    response_model=OptimizedSettlement,
    summary="Settle the session with a chosen alternative",
)
async def select_alternative(
    body: SettleSessionRequest | None = None,
    session_id: str = Path(...),
    option_id: str = Path(...),
) -> OptimizedSettlement:
    """Accept an alternative plan; it must pass proof verification first."""
    service = _get_service()
    final_values = body.final_chip_values if body else {}
    try:
        return await service.select_session_alternative(
            session_id, option_id, final_values
        )
    except LookupError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown settlement option: {option_id}",
        )
