"""Database infrastructure - engine, ORM models, and repositories."""

from milestone_escrow.infrastructure.database.engine import (
    close_db,
    get_async_session,
    init_db,
)
from milestone_escrow.infrastructure.database.orm_models import (
    Agreement,
    AgreementEvent,
    Base,
    Milestone,
    Modification,
    Transaction,
    User,
)
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    EventRepository,
    MilestoneRepository,
    ModificationRepository,
    TransactionRepository,
    UserRepository,
)

__all__ = [
    "Base",
    "Agreement",
    "AgreementEvent",
    "Milestone",
    "Modification",
    "Transaction",
    "User",
    "AgreementRepository",
    "EventRepository",
    "MilestoneRepository",
    "ModificationRepository",
    "TransactionRepository",
    "UserRepository",
    "get_async_session",
    "init_db",
    "close_db",
]
