# app/x402/middleware.py
"""
FastAPI middleware that puts paid resources behind the payment gate.

This module provides HTTP middleware that:
1. Matches the request against the paid resource table (pricing.py)
2. Runs the payment gate (free tier -> x402 proof -> prepaid credit)
3. Returns 402 Payment Required with payment instructions when nothing pays
4. Attaches the payment receipt to request.state.payment for the handler
5. Adds X-Payment-Mode and related headers to admitted responses

Requests to unpriced routes, and all requests when X402_ENABLED=false,
pass through unchanged.
"""
import logging
from typing import Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Match

from app.core.config import settings
from app.x402.audit import (
    generate_request_id,
    log_credit_charged,
    log_error,
    log_free_tier_used,
    log_payment_failed,
    log_payment_required_sent,
    log_payment_settled,
    log_payment_verified,
)
from app.x402.errors import InsufficientBalance, PaymentError, PaymentRequired, ProofInvalid
from app.x402.gate import GateRequest, PaymentGate, PaymentMethod, PaymentReceipt
from app.x402.pricing import find_paid_resource
from app.x402.verifier import X_PAYMENT_RESPONSE_HEADER, encode_payment_response

logger = logging.getLogger(__name__)

PAYMENT_MODE_HEADER = "X-Payment-Mode"
BALANCE_HEADER = "X-Balance"
FREE_REMAINING_HEADER = "X-Free-Remaining"


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def is_route_served(app, method: str, path: str) -> bool:
    """Whether the app has a route matching both method and path."""
    scope = {"type": "http", "method": method, "path": path, "root_path": ""}
    for route in app.router.routes:
        match, _ = route.matches(scope)
        if match == Match.FULL:
            return True
    return False


def build_resource_url(request: Request) -> str:
    """Absolute URL of the requested resource, preferring the configured public BASE_URL."""
    if settings.BASE_URL:
        return f"{settings.BASE_URL.rstrip('/')}{request.url.path}"
    return str(request.url)


def create_402_response(error: PaymentRequired) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    The body carries the price, deposit instructions and (when a facilitator
    is configured) the x402 `accepts` list.
    """
    return JSONResponse(status_code=402, content=error.to_dict())


def get_payment_headers(receipt: PaymentReceipt) -> Dict[str, str]:
    """Response headers describing how the request was paid for."""
    headers = {PAYMENT_MODE_HEADER: receipt.method.value}
    if receipt.balance is not None:
        headers[BALANCE_HEADER] = str(receipt.balance)
    if receipt.free_remaining is not None:
        headers[FREE_REMAINING_HEADER] = str(receipt.free_remaining)
    if receipt.settlement is not None:
        headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(receipt.settlement)
    return headers


class X402Middleware(BaseHTTPMiddleware):
    """
    Payment gate middleware for FastAPI.

    The gate can be passed explicitly (tests) or is read from
    app.state.payment_gate, which the application lifespan sets up.
    """

    def __init__(self, app, gate: Optional[PaymentGate] = None):
        super().__init__(app)
        self._gate = gate

    def get_gate(self, request: Request) -> Optional[PaymentGate]:
        if self._gate is not None:
            return self._gate
        return getattr(request.app.state, "payment_gate", None)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not settings.X402_ENABLED:
            return await call_next(request)

        resource = find_paid_resource(request.method, request.url.path)
        if resource is None:
            return await call_next(request)

        # Priced but not mounted here: let the router answer 404/405 without charging
        if not is_route_served(request.app, request.method, request.url.path):
            return await call_next(request)

        client_ip = get_client_ip(request)
        request_id = generate_request_id()
        logger.info(f"x402: Processing paid request from {client_ip}: {request.method} {request.url.path}")

        gate = self.get_gate(request)
        if gate is None:
            logger.error("x402: No payment gate configured")
            return JSONResponse(status_code=500, content={"error": "Payment processing error"})

        gate_request = GateRequest(
            method=request.method,
            path=request.url.path,
            resource_url=build_resource_url(request),
            price=resource.price_usd,
            headers=dict(request.headers),
            free_tier=resource.free_tier,
            description=resource.description,
        )

        try:
            receipt = await gate.authorize(gate_request)
        except PaymentRequired as e:
            self._audit_rejection(e, gate_request, client_ip, request_id)
            return create_402_response(e)
        except PaymentError as e:
            logger.warning(f"x402: Rejected {request.url.path} from {client_ip}: {e.message}")
            log_payment_failed(client_ip, e.message, "identity", request_id=request_id)
            return JSONResponse(status_code=e.status_code, content=e.to_dict())
        except Exception as e:
            logger.exception(f"x402: Payment processing error on {request.url.path}")
            log_error(
                client_ip,
                error_type=type(e).__name__,
                error_message=str(e),
                context={"path": request.url.path},
                request_id=request_id,
            )
            return JSONResponse(status_code=500, content={"error": "Payment processing error"})

        self._audit_admission(receipt, gate_request, client_ip, request_id)
        request.state.payment = receipt

        response = await call_next(request)
        for header, value in get_payment_headers(receipt).items():
            response.headers[header] = value
        return response

    def _audit_rejection(
        self, error: PaymentRequired, gate_request: GateRequest, client_ip: str, request_id: str
    ) -> None:
        wallet = gate_request.wallet
        if isinstance(error, InsufficientBalance):
            log_payment_failed(client_ip, error.message, "credit", wallet_address=wallet, request_id=request_id)
        elif isinstance(error, ProofInvalid):
            log_payment_failed(client_ip, error.message, "proof", wallet_address=wallet, request_id=request_id)
        log_payment_required_sent(
            client_ip,
            price_usd=gate_request.price,
            resource=gate_request.resource_url,
            reason=error.message,
            wallet_address=wallet,
            request_id=request_id,
        )

    def _audit_admission(
        self, receipt: PaymentReceipt, gate_request: GateRequest, client_ip: str, request_id: str
    ) -> None:
        if receipt.method == PaymentMethod.FREE_TIER:
            log_free_tier_used(client_ip, receipt.wallet, gate_request.path, receipt.free_remaining, request_id)
        elif receipt.method == PaymentMethod.CREDIT:
            log_credit_charged(
                client_ip, receipt.wallet, gate_request.path, receipt.amount, receipt.balance, request_id
            )
        else:
            log_payment_verified(
                client_ip, receipt.payer, receipt.method.value, receipt.amount, gate_request.path, request_id
            )
            if receipt.settlement is not None:
                log_payment_settled(
                    client_ip, receipt.payer, receipt.tx_ref, receipt.settlement.network, request_id
                )
