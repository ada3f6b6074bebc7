class ReconcilerError(Exception):
    """Base exception for the reconciliation engine."""

    retryable: bool = False


class AuthenticationError(ReconcilerError):
    """Raised when a webhook signature is missing or does not verify."""

    pass


class MalformedEventError(ReconcilerError):
    """Raised when a webhook payload cannot be parsed into a known event."""

    pass


class EntityNotFoundError(ReconcilerError):
    """Raised when the provider or the ledger has no record for an id or key.

    Not retried automatically; flagged for manual review.
    """

    def __init__(self, entity: str, reference: str):
        self.entity = entity
        self.reference = reference
        super().__init__(f"{entity} not found: {reference}")


class TransientProviderError(ReconcilerError):
    """Raised on provider timeouts, 5xx and rate limiting."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderRequestError(ReconcilerError):
    """Raised when the provider rejects a request with a non-retryable 4xx."""

    def __init__(self, message: str, status_code: int):
        self.status_code = status_code
        super().__init__(message)


class ProviderNotConfiguredError(ReconcilerError):
    """Raised when no provider access token is configured."""

    pass


class StoreConflictError(ReconcilerError):
    """Raised when a conditional write lost the race twice in a row."""

    def __init__(self, entity: str, entity_id: int):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"Concurrent update conflict on {entity} {entity_id}")


class InvariantViolation(ReconcilerError):
    """Raised when a transition would break a ledger invariant. Never applied."""

    def __init__(self, message: str, current: str | None = None, target: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message)
