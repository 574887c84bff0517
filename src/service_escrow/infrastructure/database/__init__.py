"""Database infrastructure: engine, ORM models and repositories."""

from service_escrow.infrastructure.database.engine import (
    build_session_factory,
    close_db,
    get_session_factory,
    init_db,
)
from service_escrow.infrastructure.database.orm_models import (
    Base,
    Payment,
    PaymentEvent,
)
from service_escrow.infrastructure.database.repositories import (
    PaymentEventRepository,
    PaymentRepository,
)

__all__ = [
    "Base",
    "Payment",
    "PaymentEvent",
    "PaymentRepository",
    "PaymentEventRepository",
    "build_session_factory",
    "get_session_factory",
    "init_db",
    "close_db",
]
