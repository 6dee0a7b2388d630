"""
Request validation for the Terra HTTP surface.

A validator takes the decoded request body and returns a list of error
messages (empty when valid).  Request validators run a set of validators and
raise :class:`InvalidRequest` carrying every message collected.
"""

from __future__ import annotations

import re
from typing import Any, Callable

from terra_core.errors import InvalidRequest
from terra_core.wallet import is_valid_address

Validator = Callable[[Any], list[str]]

INVALID_TERRA_ADDRESS_ERROR = "The spender param is not a valid Terra address. (Bech32 format)"
INVALID_TOKEN_SYMBOLS_ERROR = "The tokenSymbols param should be an array of strings."
INVALID_TX_HASH_ERROR = "The txHash param must be a hex string of 64 characters."

_TX_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def missing_parameter(key: str) -> str:
    return f'The request is missing the key: "{key}"'


def mk_validator(key: str, error_msg: str, condition: Callable[[Any], bool]) -> Validator:
    def validator(req: Any) -> list[str]:
        if not isinstance(req, dict) or key not in req:
            return [missing_parameter(key)]
        if not condition(req[key]):
            return [error_msg]
        return []

    return validator


def mk_request_validator(validators: list[Validator]) -> Callable[[Any], None]:
    def request_validator(req: Any) -> None:
        errors: list[str] = []
        for validator in validators:
            errors.extend(validator(req))
        if errors:
            raise InvalidRequest(errors)

    return request_validator


def is_valid_terra_address(value: Any) -> bool:
    return isinstance(value, str) and is_valid_address(value)


validate_public_key = mk_validator(
    "address",
    INVALID_TERRA_ADDRESS_ERROR,
    is_valid_terra_address,
)

validate_token_symbols = mk_validator(
    "tokenSymbols",
    INVALID_TOKEN_SYMBOLS_ERROR,
    lambda v: isinstance(v, list) and all(isinstance(s, str) and s for s in v),
)

validate_tx_hash = mk_validator(
    "txHash",
    INVALID_TX_HASH_ERROR,
    lambda v: isinstance(v, str) and bool(_TX_HASH_RE.match(v)),
)

validate_balance_request = mk_request_validator([validate_public_key, validate_token_symbols])

validate_poll_request = mk_request_validator([validate_tx_hash])
