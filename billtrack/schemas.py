from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from billtrack.models import Frequency, MatchedBy, PaymentStatus, ServiceStatus


# Service Schemas
class ServiceBase(BaseModel):
    name: str
    description: Optional[str] = None
    category_id: Optional[UUID] = None
    frequency: Frequency = Frequency.MONTHLY
    typical_day_of_month: Optional[int] = None
    estimated_amount: Optional[Decimal] = None
    amount_varies: bool = False
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    currency: str = "EUR"
    notes: Optional[str] = None


class ServiceCreate(ServiceBase):
    status: ServiceStatus = ServiceStatus.ACTIVE
    merchant_patterns: Optional[List[str]] = None
    first_payment_date: Optional[date] = None


class ServiceUpdate(BaseModel):
    # Loosely typed so that bad values reach the registry's validation (400)
    name: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[UUID] = None
    frequency: Optional[str] = None
    typical_day_of_month: Optional[int] = None
    estimated_amount: Optional[Decimal] = None
    amount_varies: Optional[bool] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    merchant_patterns: Optional[List[str]] = None
    notes: Optional[str] = None


class TransactionDetail(BaseModel):
    id: UUID
    transaction_date: date
    amount: Decimal
    currency: Optional[str] = None
    description: Optional[str] = None
    merchant: Optional[str] = None


class PaymentEntryResponse(BaseModel):
    id: Optional[UUID] = None
    service_id: UUID
    service_name: str
    transaction_id: Optional[UUID] = None
    payment_date: date
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: PaymentStatus
    is_predicted: bool
    match_confidence: Optional[int] = None
    matched_by: Optional[MatchedBy] = None
    transaction: Optional[TransactionDetail] = None

    model_config = ConfigDict(from_attributes=True)


class ServicePaymentResponse(BaseModel):
    id: UUID
    service_id: UUID
    transaction_id: Optional[UUID] = None
    payment_date: date
    amount: Decimal
    currency: Optional[str] = None
    status: PaymentStatus
    is_predicted: bool
    match_confidence: Optional[int] = None
    matched_by: MatchedBy
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ServiceResponse(ServiceBase):
    id: UUID
    normalized_name: str
    status: ServiceStatus
    next_expected_date: Optional[date] = None
    first_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    is_auto_detected: bool
    auto_detection_confidence: Optional[int] = None
    merchant_patterns: Optional[List[str]] = None
    created_at: datetime
    updated_at: datetime
    recent_payments: Optional[List[PaymentEntryResponse]] = None

    model_config = ConfigDict(from_attributes=True)


# Detection Schemas
class DetectRequest(BaseModel):
    min_occurrences: Optional[int] = Field(default=None, ge=2)
    lookback_months: Optional[int] = Field(default=None, ge=1)
    today: Optional[date] = None


class DetectedServiceCandidate(BaseModel):
    normalized_name: str
    name: str
    frequency: Frequency
    typical_day_of_month: Optional[int] = None
    estimated_amount: Decimal
    amount_varies: bool = False
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    currency: str = "EUR"
    category_id: Optional[UUID] = None
    first_payment_date: date
    last_payment_date: date
    next_expected_date: date
    auto_detection_confidence: int = Field(ge=0, le=100)
    transaction_ids: List[UUID] = []
    occurrence_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class DetectResponse(BaseModel):
    candidates: List[DetectedServiceCandidate]
    total: int


class ConfirmDetectedRequest(BaseModel):
    candidates: List[DetectedServiceCandidate]
    today: Optional[date] = None


class ConfirmDetectedResponse(BaseModel):
    created_count: int
    skipped_duplicates: List[str]
    linked_count: int
    service_ids: List[str]
    errors: List[Dict[str, str]]


# Ledger Schemas
class LinkRequest(BaseModel):
    transaction_id: UUID
    matched_by: MatchedBy = MatchedBy.MANUAL
    confidence: Optional[int] = Field(default=None, ge=0, le=100)


class PotentialMatch(BaseModel):
    service_id: UUID
    service_name: str
    confidence: int
    text_score: float
    amount_score: float
    date_score: float
    reasons: List[str]


class TransactionServiceResponse(BaseModel):
    service: Optional[ServiceResponse] = None
    payment: Optional[ServicePaymentResponse] = None


class AutoLinkResponse(BaseModel):
    linked: bool
    payment: Optional[ServicePaymentResponse] = None


class MonthPaymentsResponse(BaseModel):
    year: int
    month: int
    payments: List[PaymentEntryResponse]
    paid_count: int
    pending_count: int


class UpcomingPaymentsResponse(BaseModel):
    start_date: date
    months_ahead: int
    payments: List[PaymentEntryResponse]


class RecalculationResponse(BaseModel):
    total: int
    updated: int
    unchanged: int
    errors: List[Dict[str, str]]
    details: List[dict]


class FrequencySummary(BaseModel):
    count: int
    monthly_equivalent: Dict[str, float]


class SummaryResponse(BaseModel):
    total_services: int
    total_live: int
    by_status: Dict[str, int]
    by_frequency: Dict[str, FrequencySummary]
    monthly_total_by_currency: Dict[str, float]
    yearly_total_by_currency: Dict[str, float]
