"""
Exception taxonomy for the Terra adapter.

Every error carries a human-readable ``message`` plus a ``details`` dict with
the context needed to log it and to map it to an HTTP status (symbol, denom,
address, tx hash ...).  Token-list load failures are *not*
wrapped: they propagate as the underlying fetch / parse exception.
"""

from __future__ import annotations

from typing import Any, Optional


class TerraError(Exception):
    """Base exception for adapter operations."""

    status_code: int = 500
    error_code: int = 1000

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "errorCode": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class TokenNotSupported(TerraError):
    """A requested symbol has no entry in the token registry."""

    error_code = 1013

    def __init__(self, symbol: str):
        super().__init__(f"Token not supported: {symbol}", {"symbol": symbol})
        self.symbol = symbol


class AuthenticationFailure(TerraError):
    """Keystore decryption failed.

    Raised for a wrong password *and* for corrupted or malformed records so
    that callers cannot tell the two apart.
    """

    error_code = 1100

    def __init__(self, details: Optional[dict[str, Any]] = None):
        super().__init__("Unable to decrypt keystore record", details)


class MissingPassphrase(TerraError):
    """No keystore passphrase is configured for this process."""

    error_code = 1101

    def __init__(self):
        super().__init__("missing passphrase")


class KeystoreFileNotFound(TerraError):
    status_code = 404
    error_code = 1102

    def __init__(self, address: str, path: str = ""):
        super().__init__(
            f"No keystore file for address {address}",
            {"address": address, "path": path},
        )
        self.address = address


class TransactionNotFound(TerraError):
    status_code = 404
    error_code = 1200

    def __init__(self, tx_hash: str):
        super().__init__("Transaction not found", {"txHash": tx_hash})
        self.tx_hash = tx_hash


class DenomResolutionAmbiguous(TerraError):
    """Two distinct on-chain denoms resolved to the same balance key."""

    error_code = 1300

    def __init__(self, key: str, denoms: list[str]):
        super().__init__(
            f"Denominations {', '.join(denoms)} all resolve to {key}",
            {"key": key, "denoms": list(denoms)},
        )
        self.key = key
        self.denoms = list(denoms)


class UnknownTokenDecimals(TerraError):
    """Neither chain metadata nor the token list gives this denom's precision."""

    error_code = 1301

    def __init__(self, denom: str):
        super().__init__(f"Unknown decimals for denom {denom}", {"denom": denom})
        self.denom = denom


class ProviderError(TerraError):
    """The chain provider answered with something other than data or not-found."""

    status_code = 502
    error_code = 1400

    def __init__(self, message: str, path: str = "", status: Optional[int] = None):
        super().__init__(message, {"path": path, "status": status})
        self.path = path
        self.status = status


class InvalidRequest(TerraError):
    """Request payload failed validation."""

    status_code = 400
    error_code = 1001

    def __init__(self, errors: list[str]):
        super().__init__(", ".join(errors), {"errors": list(errors)})
        self.errors = list(errors)
