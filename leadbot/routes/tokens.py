# leadbot/routes/tokens.py
from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, Request

from leadbot.core.exceptions import ServiceUnavailableError
from leadbot.core.logging import get_structlog_logger
from leadbot.dependencies import get_crm_store
from leadbot.schemas.conversion import TokenVisitRequest, TokenVisitResponse
from leadbot.services.crm_store import CrmStore

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/token", tags=["tokens"])

TOKEN_BYTES = 6
MAX_TOKEN_ATTEMPTS = 5


def generate_token() -> str:
    """8-character URL-safe code a customer can paste into a chat."""
    return secrets.token_urlsafe(TOKEN_BYTES)


@router.post("/visit", response_model=TokenVisitResponse)
async def create_token_visit(
    body: TokenVisitRequest,
    request: Request,
    crm_store: CrmStore = Depends(get_crm_store),
):
    visit = body.lead.model_dump(exclude_none=True)
    if "client_ip_address" not in visit and request.client:
        visit["client_ip_address"] = request.client.host
    if "client_user_agent" not in visit and request.headers.get("user-agent"):
        visit["client_user_agent"] = request.headers["user-agent"]

    for attempt in range(1, MAX_TOKEN_ATTEMPTS + 1):
        token = generate_token()
        if await crm_store.create_token_visit(token=token, visit=visit):
            logger.info("token_visit.created", token=token, attempt=attempt)
            return TokenVisitResponse(success=True, token=token)
        logger.warning("token_visit.collision", token=token, attempt=attempt)

    raise ServiceUnavailableError(
        "Could not allocate a visit token",
        code="token_allocation_failed",
    )
