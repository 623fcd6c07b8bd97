"""Credits API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from pixelbill.core.errors import InsufficientCreditsError, UserNotFoundError
from pixelbill.core.security import Identity, require_identity
from pixelbill.db.session import get_db
from pixelbill.schemas.billing import ConsumeCreditsRequest
from pixelbill.services.dashboard_service import get_dashboard_view
from pixelbill.services.user_service import consume_credits

router = APIRouter(prefix="/api/credits", tags=["credits"])
logger = logging.getLogger(__name__)


@router.get("")
def get_credits(identity: Identity = Depends(require_identity), db: Session = Depends(get_db)):
    """Current credit balance and plan"""
    try:
        view = get_dashboard_view(identity, db)
    except UserNotFoundError:
        raise HTTPException(404, "User not found")
    return view.model_dump(by_alias=True)


@router.post("/consume")
def consume_credits_route(
    request_data: Optional[ConsumeCreditsRequest] = None,
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db)
):
    """Take credits for a tool run"""
    request_data = request_data or ConsumeCreditsRequest()
    try:
        remaining = consume_credits(identity.external_id, db, amount=request_data.amount)
    except UserNotFoundError:
        raise HTTPException(404, "User not found")
    except InsufficientCreditsError:
        raise HTTPException(402, "Not enough credits. Please upgrade your plan.")

    if request_data.reason:
        logger.info(f"Credits consumed by {identity.external_id} for {request_data.reason}")
    return {"success": True, "credits": remaining}
