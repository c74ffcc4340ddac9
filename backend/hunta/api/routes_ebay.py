import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Header, HTTPException
from fastapi.responses import PlainTextResponse

from hunta.core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["ebay"])


@router.post("/ebay-account-deletion", response_class=PlainTextResponse)
def ebay_account_deletion(
    payload: Optional[Dict[str, Any]] = Body(default=None),
    x_ebay_verification_token: Optional[str] = Header(default=None),
):
    """
    eBay marketplace account deletion notification.
    The verification token comes from the header or the body's `verificationToken`.
    Nothing user-related is stored, so there is nothing to delete beyond acknowledging.
    """
    payload = payload or {}
    expected = (settings.EBAY_VERIFICATION_TOKEN or "").strip()
    token = x_ebay_verification_token or payload.get("verificationToken")

    if not expected or not isinstance(token, str) or not secrets.compare_digest(token, expected):
        logger.warning("eBay webhook verification token mismatch")
        raise HTTPException(status_code=403, detail="Forbidden")

    logger.info("Received eBay account deletion webhook: %s", payload)
    return "OK"
