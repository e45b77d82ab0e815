"""Token-service response codes and their human-readable reasons."""

from __future__ import annotations

from enum import IntEnum

from revaultron.errors import ServiceCallFailed


class ResponseCode(IntEnum):
    INVALID_TRANSACTION_BODY = 7
    INVALID_ACCOUNT_ID = 15
    SUCCESS = 22
    INSUFFICIENT_ACCOUNT_BALANCE = 28
    INVALID_TOKEN_ID = 167
    INSUFFICIENT_TOKEN_BALANCE = 178
    TOKEN_NOT_ASSOCIATED_TO_ACCOUNT = 184
    TOKEN_ALREADY_ASSOCIATED_TO_ACCOUNT = 194
    TRANSACTION_REQUIRES_ZERO_TOKEN_BALANCES = 197
    SPENDER_DOES_NOT_HAVE_ALLOWANCE = 292
    AMOUNT_EXCEEDS_ALLOWANCE = 293


_REASONS: dict[int, str] = {
    ResponseCode.INVALID_TRANSACTION_BODY: "invalid transaction body",
    ResponseCode.INVALID_ACCOUNT_ID: "invalid account id",
    ResponseCode.SUCCESS: "success",
    ResponseCode.INSUFFICIENT_ACCOUNT_BALANCE: "insufficient native balance",
    ResponseCode.INVALID_TOKEN_ID: "invalid token id",
    ResponseCode.INSUFFICIENT_TOKEN_BALANCE: "insufficient token balance",
    ResponseCode.TOKEN_NOT_ASSOCIATED_TO_ACCOUNT: "token not associated to account",
    ResponseCode.TOKEN_ALREADY_ASSOCIATED_TO_ACCOUNT: "token already associated to account",
    ResponseCode.TRANSACTION_REQUIRES_ZERO_TOKEN_BALANCES: "account still holds a token balance",
    ResponseCode.SPENDER_DOES_NOT_HAVE_ALLOWANCE: "spender has no allowance",
    ResponseCode.AMOUNT_EXCEEDS_ALLOWANCE: "amount exceeds allowance",
}


def describe(code: int) -> str:
    return _REASONS.get(code, f"unknown status {code}")


def is_success(code: int) -> bool:
    return code == ResponseCode.SUCCESS


def ensure_success(operation: str, code: int) -> None:
    if code != ResponseCode.SUCCESS:
        raise ServiceCallFailed(operation, int(code), describe(code))
