from typing import Optional


class ReferralEngineError(Exception):
    """Base class for every expected business outcome raised by the services."""

    code = "error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class UnauthorizedError(ReferralEngineError):
    code = "unauthorized"
    status_code = 401


class ForbiddenError(ReferralEngineError):
    code = "forbidden"
    status_code = 403


class NotFoundError(ReferralEngineError):
    code = "not_found"
    status_code = 404


class CampaignNotFoundError(NotFoundError):
    pass


class ReferralNotFoundError(NotFoundError):
    pass


class RewardNotFoundError(NotFoundError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class ConflictError(ReferralEngineError):
    code = "conflict"
    status_code = 409


class AlreadyRedeemedError(ConflictError):
    pass


class InvalidStateError(ReferralEngineError):
    code = "invalid_state"
    status_code = 409


class ValidationFailedError(ReferralEngineError):
    code = "validation"
    status_code = 422

    def __init__(self, message: str = "", fields: Optional[dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}


class InternalError(ReferralEngineError):
    code = "internal"
    status_code = 500


# Raised by the store; services translate them into the classes above.

class StoreError(Exception):
    pass


class DuplicateKeyError(StoreError):
    def __init__(self, index: str, key):
        super().__init__(f"Duplicate key {key!r} for index {index}")
        self.index = index
        self.key = key


class StaleStatusError(StoreError):
    def __init__(self, record_id, expected, actual):
        super().__init__(
            f"Record {record_id} is {getattr(actual, 'value', actual)}, "
            f"expected one of {sorted(getattr(e, 'value', e) for e in expected)}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
