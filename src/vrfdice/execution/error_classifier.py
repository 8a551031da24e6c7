"""
error_classifier.py - Map raw ledger-client failures into the closed ErrorKind taxonomy.

classify() is pure: no logging, no I/O. Anything that cannot be recognised is
UNKNOWN with a generic message; raw exception text never becomes the
user-facing message except for decoded revert reasons.
"""

import asyncio
from typing import Any, Optional, Tuple

from ..domain.errors import ClassifiedError, ErrorKind, WrongNetworkError


USER_REJECTED_CODES = {4001, "ACTION_REJECTED"}
INSUFFICIENT_FUNDS_CODE = -32000
INTERNAL_RPC_ERROR_CODE = -32603

GENERIC_MESSAGES = {
    ErrorKind.USER_REJECTED: "Transaction rejected by user",
    ErrorKind.NETWORK_UNAVAILABLE: "Network error. Please check your connection",
    ErrorKind.WRONG_NETWORK: "Wrong network. Please switch to the supported network",
    ErrorKind.INSUFFICIENT_BALANCE: "Insufficient funds for transaction",
    ErrorKind.INSUFFICIENT_ALLOWANCE: "Token allowance too low. Please approve tokens first",
    ErrorKind.CONTRACT_REVERTED: "Transaction failed. Please check your inputs and try again.",
    ErrorKind.TIMEOUT: "Transaction is taking longer than expected; its outcome is not known yet",
    ErrorKind.UNKNOWN: "An unexpected error occurred",
}

# Known revert reasons from the dice contract -> friendly text
REVERT_MESSAGES = {
    "game already active": "You already have an active game",
    "invalid bet amount": "Invalid bet amount",
    "no active game": "No active game to resolve",
    "arithmetic underflow or overflow": "Invalid amount or calculation error. Please try a different amount.",
}

_TIMEOUT_TYPE_NAMES = {"TimeExhausted", "TimeoutError"}
_NETWORK_TYPE_NAMES = {
    "ProviderConnectionError",
    "ClientConnectorError",
    "ClientConnectionError",
    "ServerDisconnectedError",
    "ConnectionClosed",
    "ConnectError",
}
_REVERT_TYPE_NAMES = {"ContractLogicError", "ContractCustomError", "ContractPanicError"}


def classify(raw: Any) -> ClassifiedError:
    """Classify a raw failure (exception, RPC error dict or message)."""
    if isinstance(raw, ClassifiedError):
        return raw

    if isinstance(raw, WrongNetworkError):
        return _make(ErrorKind.WRONG_NETWORK, detail=str(raw))

    type_name = type(raw).__name__
    if isinstance(raw, asyncio.TimeoutError) or type_name in _TIMEOUT_TYPE_NAMES:
        return _make(ErrorKind.TIMEOUT, detail=str(raw) or type_name)

    code, message = _extract_code_and_message(raw)
    lowered = message.lower()

    if code in USER_REJECTED_CODES or "user rejected" in lowered or "user denied" in lowered:
        return _make(ErrorKind.USER_REJECTED, detail=message)

    if "wrong network" in lowered or "chain id mismatch" in lowered or "unsupported chain" in lowered:
        return _make(ErrorKind.WRONG_NETWORK, detail=message)

    if "insufficient allowance" in lowered or "exceeds allowance" in lowered:
        return _make(ErrorKind.INSUFFICIENT_ALLOWANCE, detail=message)

    if (
        "insufficient funds" in lowered
        or "exceeds balance" in lowered
        or "insufficient balance" in lowered
        or (code == INSUFFICIENT_FUNDS_CODE and "insufficient" in lowered)
    ):
        return _make(ErrorKind.INSUFFICIENT_BALANCE, detail=message)

    if type_name in _REVERT_TYPE_NAMES or "execution reverted" in lowered or "revert" in lowered:
        reason = _revert_reason(message)
        return ClassifiedError(
            kind=ErrorKind.CONTRACT_REVERTED,
            user_message=_revert_user_message(reason),
            detail=message,
        )

    if (
        isinstance(raw, (ConnectionError, OSError))
        or type_name in _NETWORK_TYPE_NAMES
        or code == INTERNAL_RPC_ERROR_CODE
        or "network error" in lowered
        or "connection" in lowered
        or "could not connect" in lowered
    ):
        return _make(ErrorKind.NETWORK_UNAVAILABLE, detail=message)

    if "timeout" in lowered or "timed out" in lowered:
        return _make(ErrorKind.TIMEOUT, detail=message)

    return _make(ErrorKind.UNKNOWN, detail=message or type_name)


def revert_error(reason: Optional[str]) -> ClassifiedError:
    """Classification for a mined transaction whose receipt status is 0."""
    return ClassifiedError(
        kind=ErrorKind.CONTRACT_REVERTED,
        user_message=_revert_user_message(reason),
        detail=reason or "receipt status 0",
    )


def _make(kind: ErrorKind, detail: Optional[str] = None) -> ClassifiedError:
    return ClassifiedError(kind=kind, user_message=GENERIC_MESSAGES[kind], detail=detail)


def _extract_code_and_message(raw: Any) -> Tuple[Any, str]:
    if isinstance(raw, str):
        return None, raw
    if isinstance(raw, dict):
        return raw.get("code"), str(raw.get("message", ""))

    code = getattr(raw, "code", None)
    message = ""
    args = getattr(raw, "args", ())
    # web3 surfaces JSON-RPC errors as ValueError({"code": ..., "message": ...})
    if args and isinstance(args[0], dict):
        payload = args[0]
        code = payload.get("code", code)
        message = str(payload.get("message", ""))
    if not message:
        message = str(getattr(raw, "message", "") or raw)
    return code, message


def _revert_reason(message: str) -> Optional[str]:
    lowered = message.lower()
    marker = "execution reverted"
    idx = lowered.find(marker)
    if idx == -1:
        return message.strip() or None
    reason = message[idx + len(marker):].lstrip(" :")
    return reason or None


def _revert_user_message(reason: Optional[str]) -> str:
    if not reason:
        return GENERIC_MESSAGES[ErrorKind.CONTRACT_REVERTED]
    lowered = reason.lower()
    for needle, text in REVERT_MESSAGES.items():
        if needle in lowered:
            return text
    return f"Transaction reverted: {reason}"
