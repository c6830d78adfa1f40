"""
Shared fixtures for database-backed tests: an in-memory SQLite session and
small factories for users, categories and transactions.
"""
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billtrack.database import Base, build_engine
from billtrack.models import Category, Frequency, RecurringService, ServiceStatus, Transaction, User
from billtrack.services.schedule_projector import add_months

USER_ID = "recurring-test-user"
OTHER_USER_ID = "recurring-other-user"


def create_test_engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return engine


@contextmanager
def session_scope():
    """Fresh in-memory database per use, with both test users created."""
    engine = create_test_engine()
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSession()
    try:
        ensure_user(db, USER_ID)
        ensure_user(db, OTHER_USER_ID)
        yield db
    finally:
        db.close()
        engine.dispose()


def ensure_user(db, user_id: str = USER_ID) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user:
        return user
    user = User(id=user_id, email=f"{user_id}@example.com", name="Recurring Test")
    db.add(user)
    db.commit()
    return user


def add_category(db, name: str = "Subscriptions", user_id: str = USER_ID) -> Category:
    category = Category(user_id=user_id, name=name, color="#3366ff")
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def add_transaction(
    db,
    when: date,
    amount,
    description: str,
    merchant: Optional[str] = None,
    currency: str = "EUR",
    category_id=None,
    user_id: str = USER_ID,
) -> Transaction:
    txn = Transaction(
        user_id=user_id,
        transaction_date=when,
        amount=Decimal(str(amount)),
        currency=currency,
        description=description,
        merchant=merchant,
        category_id=category_id,
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn


def add_monthly_series(
    db,
    description: str,
    amounts: Iterable,
    start: date,
    user_id: str = USER_ID,
    **kwargs,
) -> List[Transaction]:
    """One transaction per month starting at `start`, keeping its day of month."""
    return [
        add_transaction(db, add_months(start, i), amount, description, user_id=user_id, **kwargs)
        for i, amount in enumerate(amounts)
    ]


def add_service(db, user_id: str = USER_ID, **fields) -> RecurringService:
    """Insert a service row directly, bypassing the registry's reconciliation."""
    name = fields.pop("name", "Netflix")
    values = {
        "normalized_name": name.lower(),
        "frequency": Frequency.MONTHLY,
        "currency": "EUR",
        "status": ServiceStatus.ACTIVE,
        "merchant_patterns": [name.lower()],
    }
    values.update(fields)
    service = RecurringService(user_id=user_id, name=name, **values)
    db.add(service)
    db.commit()
    db.refresh(service)
    return service
