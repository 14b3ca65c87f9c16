# app/x402/audit.py
"""
Audit trail for payment events.

Every admission, rejection and ledger-affecting action is appended to a
JSON-lines file so balances can be reconciled and disputes investigated
after the fact.

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH

Events logged:
- 402 returned (price, resource, network)
- Free-tier use (remaining uses)
- Protocol payment verified / settled (payer, transaction reference)
- Payment failed (reason, stage)
- Credit charged (amount, resulting balance)
- Deposit credited (transaction signature, amount, asset)
- Referral earned / claimed
- Error (type, context)

Writing an audit event never fails the request that triggered it.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    FREE_TIER_USED = "free_tier_used"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    CREDIT_CHARGED = "credit_charged"
    DEPOSIT_CREDITED = "deposit_credited"
    REFERRAL_EARNED = "referral_earned"
    REFERRAL_CLAIMED = "referral_claimed"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short request ID for correlating events."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def _json_default(value: Any) -> Any:
    # Money is Decimal throughout; the audit trail keeps it exact as a string
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Wallet the event concerns (if any)
        request_id: Request identifier for correlation (generated if omitted)
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the audit log.

    Returns:
        The request_id used for this event, or None if the write failed
    """
    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event, default=_json_default) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except (OSError, TypeError) as e:
        logger.error(f"Failed to write audit event {event_type.value}: {e}")
        return None


# Convenience functions for specific event types

def log_payment_required_sent(
    client_ip: str,
    price_usd: Decimal,
    resource: str,
    reason: str,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "price_usd": price_usd,
            "currency": "USDC",
            "network": settings.x402_network,
            "pay_to": settings.X402_DEPOSIT_ADDRESS,
            "resource": resource,
            "reason": reason,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_free_tier_used(
    client_ip: str,
    wallet_address: str,
    resource: str,
    remaining: Optional[int],
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.FREE_TIER_USED,
        data={"resource": resource, "remaining": remaining},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_payment_verified(
    client_ip: str,
    payer: Optional[str],
    method: str,
    amount_usd: Decimal,
    resource: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a protocol (x402 or test) payment that passed verification."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={"method": method, "amount_usd": amount_usd, "resource": resource},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_settled(
    client_ip: str,
    payer: Optional[str],
    transaction_hash: Optional[str],
    network: Optional[str],
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={"transaction_hash": transaction_hash, "network": network},
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id,
    )


def log_payment_failed(
    client_ip: str,
    reason: str,
    stage: str,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a rejected payment (bad proof, short balance, malformed wallet)."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={"reason": reason, "stage": stage},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_credit_charged(
    client_ip: str,
    wallet_address: str,
    resource: str,
    amount_usd: Decimal,
    balance: Optional[Decimal],
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.CREDIT_CHARGED,
        data={"resource": resource, "amount_usd": amount_usd, "balance": balance},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_deposit_credited(
    wallet_address: str,
    tx_signature: str,
    amount_usd: Decimal,
    asset: str,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a deposit credited to a wallet's prepaid balance."""
    return log_audit_event(
        event_type=AuditEventType.DEPOSIT_CREDITED,
        data={"tx_signature": tx_signature, "amount_usd": amount_usd, "asset": asset},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_referral_earned(
    referrer: str,
    referred_wallet: str,
    resource: str,
    earned_usd: Decimal,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REFERRAL_EARNED,
        data={"referred_wallet": referred_wallet, "resource": resource, "earned_usd": earned_usd},
        wallet_address=referrer,
        request_id=request_id,
    )


def log_referral_claimed(
    wallet_address: str,
    claimed: Dict[str, Decimal],
    paid_ref: str,
    marked: int,
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.REFERRAL_CLAIMED,
        data={"claimed": claimed, "paid_ref": paid_ref, "rows": marked},
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id,
    )


def _iter_events():
    log_path = get_audit_log_path()
    if not log_path.exists():
        return
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed audit line in {log_path}")


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        client_ip: Filter by client IP (optional)
        wallet_address: Filter by wallet (optional)

    Returns:
        List of audit events (most recent first)
    """
    events = []
    for event in _iter_events():
        if event_type and event.get("event_type") != event_type.value:
            continue
        if client_ip and event.get("client_ip") != client_ip:
            continue
        if wallet_address and event.get("wallet_address") != wallet_address:
            continue
        events.append(event)

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Summarize the audit log.

    Returns:
        Dict with total events, counts by type and the timestamp range
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return {
            "total_events": 0,
            "events_by_type": {},
            "log_path": str(log_path),
            "log_exists": False,
        }

    events_by_type: Dict[str, int] = {}
    total = 0
    first_timestamp = None
    last_timestamp = None

    for event in _iter_events():
        total += 1
        event_type = event.get("event_type", "unknown")
        events_by_type[event_type] = events_by_type.get(event_type, 0) + 1

        timestamp = event.get("timestamp")
        if timestamp:
            if first_timestamp is None:
                first_timestamp = timestamp
            last_timestamp = timestamp

    return {
        "total_events": total,
        "events_by_type": events_by_type,
        "first_event": first_timestamp,
        "last_event": last_timestamp,
        "log_path": str(log_path),
        "log_exists": True,
    }
