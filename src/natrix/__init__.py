"""natrix: keep a command store and a query store in sync.

Commands write aggregates and outbox rows atomically; the outbox dispatcher
publishes events on a partitioned, at-least-once bus; the projection engine
applies them idempotently to read models.

OpenTelemetry instrumentation lives in ``natrix.otel`` (``otel`` extra).
"""

from natrix.app import Natrix, NatrixConfig
from natrix.bus import BusConfig, DeadLetterQueue, EventBus, Message
from natrix.domain import (
    CancelOrder,
    CreateOrder,
    DeleteOrder,
    DomainEvent,
    EventType,
    OrderFilter,
    OrderView,
    UpdateOrder,
)
from natrix.errors import (
    ConflictError,
    DeliveryError,
    NatrixError,
    NotFoundError,
    PermanentError,
    ProjectionError,
    ProjectionGapError,
    StorageError,
    ValidationError,
)
from natrix.handlers import CommandHandler, CommandResult, QueryHandler
from natrix.marshaler import Marshaler, PydanticMarshaler
from natrix.outbox import DispatcherConfig, OutboxDispatcher
from natrix.projection import ApplyResult, ProjectionConfig, ProjectionEngine
from natrix.retry import RetryPolicy
from natrix.shutdown import graceful_shutdown
from natrix.store import InMemoryStore, SQLStore, Store, StoreConfig

__version__ = "0.1.0"

__all__ = [
    # app
    "Natrix",
    "NatrixConfig",
    "graceful_shutdown",
    # store
    "Store",
    "StoreConfig",
    "InMemoryStore",
    "SQLStore",
    # domain
    "CreateOrder",
    "UpdateOrder",
    "CancelOrder",
    "DeleteOrder",
    "DomainEvent",
    "EventType",
    "OrderView",
    "OrderFilter",
    # components
    "CommandHandler",
    "CommandResult",
    "QueryHandler",
    "EventBus",
    "BusConfig",
    "Message",
    "DeadLetterQueue",
    "OutboxDispatcher",
    "DispatcherConfig",
    "ProjectionEngine",
    "ProjectionConfig",
    "ApplyResult",
    "Marshaler",
    "PydanticMarshaler",
    "RetryPolicy",
    # errors
    "NatrixError",
    "ValidationError",
    "ConflictError",
    "StorageError",
    "DeliveryError",
    "NotFoundError",
    "ProjectionGapError",
    "ProjectionError",
    "PermanentError",
]
