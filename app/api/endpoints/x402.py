# app/api/endpoints/x402.py
from fastapi import APIRouter, Request
from typing import Any, Dict
import logging

from app.core.config import settings
from app.x402.middleware import is_route_served
from app.x402.pricing import build_discovery_document, get_paid_resources

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get(
    "/.well-known/x402",
    summary="x402 Service Discovery"
)
def discovery(request: Request) -> Dict[str, Any]:
    """
    Lists every paid resource served by this app with its price, so autonomous
    clients can plan payments without probing for 402 responses first.
    """
    base_url = settings.BASE_URL or str(request.base_url)
    served = [
        r for r in get_paid_resources()
        if is_route_served(request.app, r.method, r.path)
    ]
    return build_discovery_document(base_url, served)


@router.get(
    "/ping",
    summary="Paid Probe"
)
def ping(request: Request) -> Any:
    """
    Cheapest paid resource. Returns the payment receipt attached by the
    payment middleware, so clients can test their payment setup end to end.
    """
    payment = getattr(request.state, "payment", None)
    return {
        "status": "ok",
        "paid": payment is not None,
        "payment": payment.to_dict() if payment is not None else None,
    }
