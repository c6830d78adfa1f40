"""
SQLAlchemy models for recurring services and their payment ledger.
Transactions and categories are owned by upstream collaborators; this module
only maps the columns the recurring-services core reads.
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    Numeric,
    Text,
    Integer,
    ForeignKey,
    Index,
    JSON,
    Uuid,
    Enum as SAEnum,
    text,
)
from sqlalchemy.orm import relationship

from billtrack.database import Base


class Frequency(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    BIMONTHLY = "bimonthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"
    ANNUAL = "annual"

    @property
    def is_month_based(self) -> bool:
        return self not in (Frequency.WEEKLY, Frequency.BIWEEKLY)


class ServiceStatus(str, enum.Enum):
    ACTIVE = "active"
    UP_TO_DATE = "up_to_date"
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_sticky(self) -> bool:
        """Paused and cancelled are only ever set by an explicit user action."""
        return self in (ServiceStatus.PAUSED, ServiceStatus.CANCELLED)


class PaymentStatus(str, enum.Enum):
    PAID = "paid"
    PENDING = "pending"


class MatchedBy(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


def _enum_column_type(enum_cls: type[enum.Enum], name: str) -> SAEnum:
    # Stored as plain strings holding the enum values ("up_to_date", not "UP_TO_DATE").
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


class User(Base):
    """
    Minimal user model for foreign key relationships.
    User management is handled by the hosting application.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(Text, nullable=True)
    email = Column(Text, unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    categories = relationship("Category", back_populates="user", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="user", cascade="all, delete-orphan")
    recurring_services = relationship("RecurringService", back_populates="user", cascade="all, delete-orphan")


class Category(Base):
    """
    Category model. Rows are maintained by the category collaborator.
    """
    __tablename__ = "categories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    color = Column(String(7))  # Hex color
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="categories")


class Transaction(Base):
    """
    Transaction model. Read-only to the recurring-services core: rows are
    written by statement uploads, bank syncs and email ingestion.
    """
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)  # negative = outflow
    currency = Column(String(3), default="EUR")
    description = Column(Text)
    merchant = Column(String(255))
    category_id = Column(Uuid, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="transactions")
    category = relationship("Category")
    service_payments = relationship("ServicePayment", back_populates="transaction")

    __table_args__ = (
        Index("idx_transactions_user_date", "user_id", "transaction_date"),
    )


class RecurringService(Base):
    """
    A recognized recurring payment obligation (subscription, utility, rent, insurance).
    Schedule and status fields are derived by the reconciler and are not user-editable.
    """
    __tablename__ = "recurring_services"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=False)  # NameNormalizer key of name
    description = Column(Text, nullable=True)
    category_id = Column(Uuid, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)

    # Recurrence
    frequency = Column(_enum_column_type(Frequency, "service_frequency"), nullable=False, default=Frequency.MONTHLY)
    typical_day_of_month = Column(Integer, nullable=True)  # 1-31, month-based frequencies only

    # Amounts (always positive)
    estimated_amount = Column(Numeric(15, 2), nullable=True)
    amount_varies = Column(Boolean, default=False, nullable=False)
    min_amount = Column(Numeric(15, 2), nullable=True)
    max_amount = Column(Numeric(15, 2), nullable=True)
    currency = Column(String(3), default="EUR")

    # Status and schedule
    status = Column(_enum_column_type(ServiceStatus, "service_status"), nullable=False, default=ServiceStatus.ACTIVE)
    next_expected_date = Column(Date, nullable=True)
    first_payment_date = Column(Date, nullable=True)
    last_payment_date = Column(Date, nullable=True)

    # Detection metadata
    is_auto_detected = Column(Boolean, default=False, nullable=False)
    auto_detection_confidence = Column(Integer, nullable=True)  # 0-100
    merchant_patterns = Column(JSON, nullable=True)  # extra normalized keys identifying this service
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="recurring_services")
    category = relationship("Category")
    payments = relationship(
        "ServicePayment",
        back_populates="service",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # Indexes and constraints
    __table_args__ = (
        Index("idx_recurring_services_user", "user_id"),
        Index("idx_recurring_services_next_expected", "next_expected_date"),
        # One live service per normalized name and user.
        Index(
            "uq_recurring_services_user_normalized_name",
            "user_id",
            "normalized_name",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )


class ServicePayment(Base):
    """
    Ledger row linking a transaction to a recurring service.
    A null transaction_id marks a predicted occurrence; those are synthesized on read.
    """
    __tablename__ = "service_payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    service_id = Column(Uuid, ForeignKey("recurring_services.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id = Column(Uuid, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True)
    payment_date = Column(Date, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), default="EUR")
    status = Column(_enum_column_type(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PAID)
    is_predicted = Column(Boolean, default=False, nullable=False)
    match_confidence = Column(Integer, nullable=True)  # 0-100
    matched_by = Column(_enum_column_type(MatchedBy, "payment_matched_by"), nullable=False, default=MatchedBy.MANUAL)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    service = relationship("RecurringService", back_populates="payments")
    transaction = relationship("Transaction", back_populates="service_payments")

    __table_args__ = (
        Index("idx_service_payments_service_date", "service_id", "payment_date"),
        Index("idx_service_payments_payment_date", "payment_date"),
        # A transaction funds at most one realized payment.
        Index(
            "uq_service_payments_realized_transaction",
            "transaction_id",
            unique=True,
            postgresql_where=text("NOT is_predicted"),
            sqlite_where=text("NOT is_predicted"),
        ),
    )
