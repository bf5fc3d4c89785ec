"""Session and ledger route handlers.

Endpoints:
    POST /api/sessions                                -- Create a session.
    GET  /api/sessions/{session_id}                   -- Session with its player ledger.
    POST /api/sessions/{session_id}/players           -- Add a player.
    POST /api/sessions/{session_id}/start             -- Start the session (created -> active).
    POST /api/sessions/{session_id}/buy-ins           -- Record a buy-in.
    POST /api/sessions/{session_id}/cash-outs         -- Record a cash-out.
    GET  /api/sessions/{session_id}/transactions      -- Accepted transactions in order.
    POST /api/sessions/{session_id}/transactions/{transaction_id}/undo
                                                      -- Undo a recent transaction.
    GET  /api/sessions/{session_id}/bank              -- Pot cross-checked against the ledger.
    POST /api/sessions/{session_id}/players/{player_id}/early-cash-out
                                                      -- Quote a mid-game cash-out.

Rejected requests answer 422 with the full ValidationResult as body.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Path, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from potsettle.dal.database import get_database
from potsettle.dal.players_dal import PlayerDAL
from potsettle.dal.sessions_dal import SessionDAL
from potsettle.dal.transactions_dal import TransactionDAL
from potsettle.models.bank import BankBalance, EarlyCashOutQuote
from potsettle.models.player import PlayerLedgerEntry
from potsettle.models.session import Session
from potsettle.models.transaction import Transaction
from potsettle.models.validation import ValidationResult
from potsettle.services.ledger_service import LedgerService

logger = logging.getLogger("potsettle.routes.sessions")

router = APIRouter(prefix="/sessions", tags=["Sessions"])


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


def _rejected(result: ValidationResult) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=result.model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# Pydantic request / response schemas
# ---------------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    """Request body for POST /api/sessions."""
    name: str = Field(..., min_length=1, max_length=100)


class SessionDetailResponse(BaseModel):
    """Response for GET /api/sessions/{session_id}."""
    session: Session
    players: list[PlayerLedgerEntry]


class AddPlayerRequest(BaseModel):
    """Request body for POST /api/sessions/{session_id}/players."""
    name: str = Field(..., max_length=50)


class BuyInRequest(BaseModel):
    """Request body for POST /api/sessions/{session_id}/buy-ins."""
    player_id: str
    amount: Any


class CashOutRequest(BaseModel):
    """Request body for POST /api/sessions/{session_id}/cash-outs."""
    player_id: str
    amount: Any
    cash_out_completely: bool = Field(
        default=False,
        description="Mark the player cashed out even if chips remain.",
    )


class UndoRequest(BaseModel):
    """Request body for POST /api/sessions/{session_id}/transactions/{transaction_id}/undo."""
    reason: Optional[str] = Field(default=None, max_length=200)


class EarlyCashOutRequest(BaseModel):
    """Request body for POST /api/sessions/{session_id}/players/{player_id}/early-cash-out."""
    chip_value: Any


class TransactionResponse(BaseModel):
    """Response for accepted buy-ins, cash-outs and undos."""
    transaction: Transaction
    validation: ValidationResult


class StartSessionResponse(BaseModel):
    session: Session
    validation: ValidationResult


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=Session,
    status_code=status.HTTP_201_CREATED,
    summary="Create a session",
)
async def create_session(body: CreateSessionRequest) -> Session:
    service = _get_service()
    return await service.create_session(body.name)


@router.get(
    "/{session_id}",
    response_model=SessionDetailResponse,
    summary="Get a session and its player ledger",
)
async def get_session(session_id: str = Path(...)) -> SessionDetailResponse:
    service = _get_service()
    detail = await service.get_session_detail(session_id)
    return SessionDetailResponse(**detail)


@router.post(
    "/{session_id}/players",
    response_model=PlayerLedgerEntry,
    status_code=status.HTTP_201_CREATED,
    summary="Add a player to a session",
)
async def add_player(body: AddPlayerRequest, session_id: str = Path(...)):
    service = _get_service()
    result, player = await service.add_player(session_id, body.name)
    if not result.is_valid:
        return _rejected(result)
    return player


@router.post(
    "/{session_id}/start",
    response_model=StartSessionResponse,
    summary="Start a session (created -> active)",
)
async def start_session(session_id: str = Path(...)):
    service = _get_service()
    result, session = await service.start_session(session_id)
    if not result.is_valid:
        return _rejected(result)
    return StartSessionResponse(session=session, validation=result)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

@router.post(
    "/{session_id}/buy-ins",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a buy-in",
)
async def record_buy_in(body: BuyInRequest, session_id: str = Path(...)):
    service = _get_service()
    result, transaction = await service.record_buy_in(
        session_id, body.player_id, body.amount
    )
    if not result.is_valid:
        return _rejected(result)
    return TransactionResponse(transaction=transaction, validation=result)


@router.post(
    "/{session_id}/cash-outs",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a cash-out",
)
async def record_cash_out(body: CashOutRequest, session_id: str = Path(...)):
    service = _get_service()
    result, transaction = await service.record_cash_out(
        session_id,
        body.player_id,
        body.amount,
        cash_out_completely=body.cash_out_completely,
    )
    if not result.is_valid:
        return _rejected(result)
    return TransactionResponse(transaction=transaction, validation=result)


@router.get(
    "/{session_id}/transactions",
    response_model=list[Transaction],
    summary="List accepted transactions",
)
async def list_transactions(session_id: str = Path(...)) -> list[Transaction]:
    service = _get_service()
    return await service.list_transactions(session_id)


@router.post(
    "/{session_id}/transactions/{transaction_id}/undo",
    response_model=TransactionResponse,
    summary="Undo a recent transaction",
)
async def undo_transaction(
    body: Optional[UndoRequest] = None,
    session_id: str = Path(...),
    transaction_id: str = Path(...),
):
    service = _get_service()
    result, transaction = await service.undo_transaction(
        session_id, transaction_id, body.reason if body else None
    )
    if not result.is_valid:
        return _rejected(result)
    return TransactionResponse(transaction=transaction, validation=result)


# ---------------------------------------------------------------------------
# Bank
# ---------------------------------------------------------------------------

@router.get(
    "/{session_id}/bank",
    response_model=BankBalance,
    summary="Cross-check the pot against the ledger",
)
async def get_bank_balance(session_id: str = Path(...)) -> BankBalance:
    service = _get_service()
    return await service.calculate_bank_balance(session_id)


@router.post(
    "/{session_id}/players/{player_id}/early-cash-out",
    response_model=EarlyCashOutQuote,
    summary="Quote a mid-game cash-out without recording it",
)
async def quote_early_cash_out(
    body: EarlyCashOutRequest,
    session_id: str = Path(...),
    player_id: str = Path(...),
) -> EarlyCashOutQuote:
    service = _get_service()
    return await service.calculate_early_cash_out(
        session_id, player_id, body.chip_value
    )
