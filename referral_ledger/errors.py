from typing import Optional

from .models import ERROR_MESSAGES, LedgerErrorCode


class LedgerServiceError(Exception):
    pass


class LedgerRejection(LedgerServiceError):
    """An expected, user-facing refusal. Converted to a result at the ledger boundary."""

    def __init__(self, code: LedgerErrorCode, message: Optional[str] = None):
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        super().__init__(self.message)


class CodeGenerationExhaustedError(LedgerServiceError):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not generate a unique referral code after {attempts} attempts")


class DirectoryUnavailableError(LedgerServiceError):
    pass


class SubscriptionCheckError(LedgerServiceError):
    pass


class IdentityUnavailableError(LedgerServiceError):
    pass
