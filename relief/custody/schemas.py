from typing import Any

from pydantic import BaseModel

PENDING_STATES = frozenset({"INITIATED", "PENDING", "QUEUED", "SENT"})
SUCCESS_STATES = frozenset({"COMPLETE", "COMPLETED", "CONFIRMED"})
FAILURE_STATES = frozenset({"FAILED", "CANCELLED", "DENIED"})

_SIMULATION_MARKERS = ("ESTIMATION_ERROR", "SIMULATION", "REVERT")


class TransferResult(BaseModel):
    id: str
    state: str
    error_reason: str | None = None
    error_details: str | None = None
    tx_hash: str | None = None
    amount: str | None = None
    destination_address: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.state in PENDING_STATES

    @property
    def is_success(self) -> bool:
        return self.state in SUCCESS_STATES

    @property
    def is_failure(self) -> bool:
        return self.state in FAILURE_STATES

    @property
    def is_simulation_revert(self) -> bool:
        reason = f"{self.error_reason or ''} {self.error_details or ''}".upper()
        return any(marker in reason for marker in _SIMULATION_MARKERS)


class TokenBalance(BaseModel):
    token_id: str
    symbol: str | None = None
    token_address: str | None = None
    blockchain: str | None = None
    amount: str = "0"


class CustodialWallet(BaseModel):
    id: str
    address: str
    blockchain: str | None = None
    state: str | None = None


def parse_transfer(payload: dict[str, Any]) -> TransferResult:
    """Normalize the transfer shapes the custody API returns.

    Create calls answer ``{data: {id, state}}``, lookups answer
    ``{data: {transaction: {...}}}``, and the hash field name varies.
    """
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    if isinstance(data, dict) and isinstance(data.get("transaction"), dict):
        data = data["transaction"]
    if not isinstance(data, dict):
        data = {}
    tx_hash = None
    for key in ("txHash", "transactionHash", "onchainTxHash", "blockchainTxHash", "hash"):
        if data.get(key):
            tx_hash = str(data[key])
            break
    amounts = data.get("amounts") or []
    details = data.get("errorDetails") or data.get("errorMessage")
    return TransferResult(
        id=str(data.get("id") or ""),
        state=str(data.get("state") or "UNKNOWN").upper(),
        error_reason=data.get("errorReason"),
        error_details=str(details) if details is not None else None,
        tx_hash=tx_hash,
        amount=str(amounts[0]) if amounts else None,
        destination_address=data.get("destinationAddress"),
    )


def parse_token_balances(payload: dict[str, Any]) -> list[TokenBalance]:
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    rows = data.get("tokenBalances") if isinstance(data, dict) else None
    balances: list[TokenBalance] = []
    for row in rows or []:
        token = row.get("token") or {}
        token_id = token.get("id")
        if not token_id:
            continue
        balances.append(
            TokenBalance(
                token_id=str(token_id),
                symbol=token.get("symbol"),
                token_address=token.get("tokenAddress"),
                blockchain=token.get("blockchain"),
                amount=str(row.get("amount") or "0"),
            )
        )
    return balances


def parse_wallet(payload: dict[str, Any]) -> CustodialWallet:
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    wallet = data.get("wallet", data) if isinstance(data, dict) else {}
    return CustodialWallet(
        id=str(wallet.get("id") or ""),
        address=str(wallet.get("address") or ""),
        blockchain=wallet.get("blockchain"),
        state=wallet.get("state"),
    )
