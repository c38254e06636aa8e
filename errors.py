"""Error codes and exceptions for the escrow ledger.

Codes are grouped by their high byte: 0x01 validation, 0x02 authorization,
0x04 deal state, 0x05 payment.
"""

from enum import IntEnum


class ErrorCode(IntEnum):
    # Validation
    INVALID_ARGUMENT = 0x0100
    INVALID_AMOUNT = 0x0105
    INVALID_ADDRESS = 0x0106
    INVALID_TIMEOUT = 0x0107

    # Authorization
    UNAUTHORIZED = 0x0200

    # State
    DEAL_NOT_FOUND = 0x0402
    DEAL_WRONG_STATE = 0x0403

    # Payment
    PAYMENT_FAILED = 0x0500


class EscrowError(Exception):
    """Base class: a synchronous rejection of a single ledger operation."""

    default_code = ErrorCode.INVALID_ARGUMENT

    def __init__(self, message: str, code: ErrorCode | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def __str__(self) -> str:
        return f"{self.code.name}({self.code:#06x}): {self.message}"


class InvalidArgument(EscrowError):
    default_code = ErrorCode.INVALID_ARGUMENT


class Unauthorized(EscrowError):
    default_code = ErrorCode.UNAUTHORIZED


class InvalidState(EscrowError):
    default_code = ErrorCode.DEAL_WRONG_STATE


class NotFound(EscrowError):
    default_code = ErrorCode.DEAL_NOT_FOUND


class PaymentFailed(EscrowError):
    """Backend could not move funds. Deal state is unchanged."""
    default_code = ErrorCode.PAYMENT_FAILED
