# app/services/solana_rpc.py
"""
Solana JSON-RPC lookups used to verify deposits.

Only what deposit crediting needs: fetch a confirmed transaction and work
out how much USDC or SOL it moved into the deposit address. Amounts are
read from the raw integer fields (token `amount` + `decimals`, lamports)
so no float rounding happens before the ledger sees them.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 10 ** 9


class SolanaRPCError(Exception):
    """The RPC node answered with an error or an unusable payload."""


def _rpc_call(method: str, params: List[Any]) -> Any:
    """
    Make a JSON-RPC call to the configured Solana node.

    Raises:
        requests.exceptions.RequestException: Transport failure or timeout
        SolanaRPCError: If the node returned an error object
    """
    response = requests.post(
        settings.SOLANA_RPC_URL,
        json={
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        },
        timeout=settings.SOLANA_RPC_TIMEOUT_SECONDS,
    )
    response.raise_for_status()

    result = response.json()
    if "error" in result:
        raise SolanaRPCError(f"RPC error: {result['error']}")

    if "result" not in result:
        raise SolanaRPCError("Invalid RPC response: missing 'result' field")

    return result["result"]


def get_transaction(tx_signature: str) -> Optional[Dict[str, Any]]:
    """
    Fetch a confirmed transaction.

    Returns:
        The transaction object, or None if the node does not know it (yet)
    """
    logger.debug(f"Solana RPC: getTransaction {tx_signature[:16]}...")
    return _rpc_call(
        "getTransaction",
        [
            tx_signature,
            {
                "encoding": "json",
                "commitment": "confirmed",
                "maxSupportedTransactionVersion": 0,
            },
        ],
    )


def get_account_keys(tx: Dict[str, Any]) -> List[str]:
    """
    All account keys of a transaction, in index order.

    Versioned transactions append addresses loaded from lookup tables
    (writable first, then readonly) after the static keys.
    """
    message = tx.get("transaction", {}).get("message", {})
    keys = [str(k) for k in message.get("accountKeys", [])]
    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable", []))
    keys.extend(loaded.get("readonly", []))
    return keys


def _token_amount(balance: Dict[str, Any]) -> Decimal:
    ui = balance.get("uiTokenAmount") or {}
    if "amount" not in ui:
        return Decimal("0")
    return Decimal(ui["amount"]).scaleb(-int(ui.get("decimals", 0)))


def parse_usdc_transfer(tx: Dict[str, Any], deposit_address: str, usdc_mint: str) -> Decimal:
    """
    USDC received by the deposit address in a transaction.

    Compares pre/post token balances of the deposit owner's USDC account.
    Failed transactions never count as a transfer.

    Returns:
        The positive USDC amount received, or 0
    """
    meta = tx.get("meta") or {}
    if meta.get("err") is not None:
        return Decimal("0")

    pre_balances = meta.get("preTokenBalances") or []
    for post in meta.get("postTokenBalances") or []:
        if post.get("mint") != usdc_mint or post.get("owner") != deposit_address:
            continue

        pre = next(
            (p for p in pre_balances
             if p.get("accountIndex") == post.get("accountIndex") and p.get("mint") == usdc_mint),
            None,
        )
        pre_amount = _token_amount(pre) if pre else Decimal("0")
        delta = _token_amount(post) - pre_amount
        if delta > 0:
            return delta

    return Decimal("0")


def parse_sol_transfer(tx: Dict[str, Any], deposit_address: str) -> Decimal:
    """
    Native SOL received by the deposit address in a transaction.

    Returns:
        The positive SOL amount received, or 0 (also when the address
        is not part of the transaction)
    """
    meta = tx.get("meta") or {}
    if meta.get("err") is not None:
        return Decimal("0")

    keys = get_account_keys(tx)
    if deposit_address not in keys:
        return Decimal("0")
    index = keys.index(deposit_address)

    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    if index >= len(pre) or index >= len(post):
        return Decimal("0")

    delta = post[index] - pre[index]
    if delta <= 0:
        return Decimal("0")
    return lamports_to_sol(delta)


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(int(lamports)) / LAMPORTS_PER_SOL
