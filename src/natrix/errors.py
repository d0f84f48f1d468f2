"""Error taxonomy shared by the command and query sides."""

from typing import Any


class NatrixError(Exception):
    """Base class for all natrix errors.

    Every error carries a stable ``kind`` string so callers outside the
    process can tell failures apart without importing these classes.
    """

    kind = "error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__doc__ or self.kind
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Structured form used by the document surface."""
        return {"kind": self.kind, "message": self.message}


class ValidationError(NatrixError):
    """Command rejected by a business rule; nothing was written."""

    kind = "validation"


class ConflictError(NatrixError):
    """Concurrent modification detected; retry with a fresh version."""

    kind = "conflict"

    def __init__(
        self,
        message: str = "",
        *,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class StorageError(NatrixError):
    """Transient store failure (timeout, driver error)."""

    kind = "storage"


class DeliveryError(NatrixError):
    """Event bus could not accept an event; the outbox row is kept."""

    kind = "delivery"


class NotFoundError(NatrixError):
    """No record exists for the requested id."""

    kind = "not_found"


class ProjectionGapError(NatrixError):
    """Event arrived before its predecessor; it was held, not applied."""

    kind = "projection_gap"

    def __init__(self, aggregate_id: int, expected: int, received: int) -> None:
        self.aggregate_id = aggregate_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"aggregate {aggregate_id}: expected sequence {expected}, "
            f"received {received}"
        )


class ProjectionError(NatrixError):
    """Event cannot be projected onto the current read model."""

    kind = "projection"


class PermanentError(Exception):
    """Exception that should not be retried.

    Wrap an exception in PermanentError to skip retries and dead-letter
    immediately.

    Usage:
        raise PermanentError(ProjectionError("unknown event type"))
    """

    def __init__(self, cause: Exception) -> None:
        self.cause = cause
        super().__init__(str(cause))
