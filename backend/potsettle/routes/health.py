"""Health check endpoint."""

import logging
from decimal import Decimal

from fastapi import APIRouter

from potsettle.config import settings
from potsettle.dal.database import get_database
from potsettle.errors import SettlementSystemError
from potsettle.models.positions import NetPosition
from potsettle.services.proof_engine import verify_proof
from potsettle.services.settlement_optimizer import optimize_settlement

logger = logging.getLogger("potsettle.routes.health")
router = APIRouter(tags=["Health"])

_SAMPLE_POSITIONS = [
    NetPosition(player_id="health-a", player_name="A", net_amount=Decimal("1.00")),
    NetPosition(player_id="health-b", player_name="B", net_amount=Decimal("-1.00")),
]


def _check_calculator() -> str:
    """Settle a two-player sample and re-verify its proof."""
    try:
        settlement = optimize_settlement(_SAMPLE_POSITIONS)
        verification = verify_proof(settlement.mathematical_proof)
    except SettlementSystemError as e:
        logger.error("Calculator health check failed: %s", e.message)
        return "down"
    if not (settlement.is_valid and verification.is_valid):
        logger.error("Calculator health check produced an invalid proof: %s", verification.errors)
        return "down"
    return "ok"


@router.get("/health")
async def health_check():
    """Report the settlement calculator and the session ledger separately.

    Always answers 200. The calculator endpoints need no database, so a
    missing MongoDB leaves the service ``degraded`` rather than down.
    """
    checks = {"calculator": _check_calculator(), "ledger": "unknown"}

    try:
        db = get_database()
        await db.command("ping")
        checks["ledger"] = "ok"
    except Exception as e:
        logger.warning("Ledger database check failed: %s", str(e))
        checks["ledger"] = "down"

    if checks["calculator"] != "ok":
        overall = "unhealthy"
    elif checks["ledger"] != "ok":
        overall = "degraded"
    else:
        overall = "healthy"

    return {"status": overall, "version": settings.APP_VERSION, "checks": checks}
