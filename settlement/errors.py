"""Settlement error taxonomy.

Validation and conflict errors are raised before any side effect and are
reported verbatim to the caller. Processor errors carry a ``retryable`` flag
and say whether the remote outcome is unknown. Irrecoverable errors mean
stored data broke an arithmetic invariant; they abort the
unit of work and are never corrected in place.
"""


class SettlementError(Exception):
    code = "settlement_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(SettlementError):
    code = "validation_error"


class NotFoundError(SettlementError):
    code = "not_found"


class ExternalProcessorError(SettlementError):
    code = "processor_error"

    def __init__(self, message: str, code: str | None = None, retryable: bool = True,
                 outcome_unknown: bool = False):
        super().__init__(message, code)
        self.retryable = retryable
        # The request may have been applied remotely; repeat it under the same idempotency key
        self.outcome_unknown = outcome_unknown


class ConfirmationConflict(SettlementError):
    code = "confirmation_conflict"


class InvalidTransition(SettlementError):
    code = "invalid_transition"


class IrrecoverableError(SettlementError):
    code = "irrecoverable"
