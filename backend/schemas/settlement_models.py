# schemas/settlement_models.py
# ============================================================================
# PAYMENT SETTLEMENT ENGINE — DOMAIN + WEBHOOK SCHEMAS
# ============================================================================
# Type-safe models for orders, payments, earnings, the settlement outbox and
# the gateway notification payloads.
#
# Money is Decimal in major currency units. Gateway amounts arrive in minor
# units (kobo/cents) and are converted once, in GatewayTransaction.
# ============================================================================

import json
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# ============================================================================
# SECTION 1: HELPERS
# ============================================================================

ZERO = Decimal("0")


def round_half_up(value: Decimal) -> Decimal:
    """Round to whole currency units, halves away from zero."""
    return Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def calculate_points(order_total: Decimal, points_per_ten: Decimal) -> int:
    """floor(order_total / 10 * points_per_ten)"""
    raw = Decimal(order_total) / Decimal(10) * Decimal(points_per_ten)
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def to_document(model: BaseModel) -> Dict[str, Any]:
    """Serialize a model into a JSON-safe document for the store, keyed by alias."""
    return model.model_dump(mode="json", by_alias=True)


# ============================================================================
# SECTION 2: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING_PAYMENT = "Pending Payment"
    PROCESSING = "Processing"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    COMPLETED = "Completed"
    FAILED = "Failed"


class PayoutStatus(str, Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"


class SideEffectName(str, Enum):
    BUYER_RECEIPT = "buyer_receipt"
    SELLER_NOTIFICATION = "seller_notification"
    BUYER_POINTS = "buyer_points"
    SELLER_EARNINGS = "seller_earnings"
    SELLER_POINTS = "seller_points"
    REFERRAL_COMMISSION = "referral_commission"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"


# ============================================================================
# SECTION 3: ORDER / PAYMENT DOCUMENTS
# ============================================================================

class SharedDocument(BaseModel):
    """
    Document in a collection the storefront also reads and writes.
    Stored with camelCase keys; snake_case names are accepted on input.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)


class OrderItem(SharedDocument):
    """One order line."""

    product_id: str
    product_name: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    line_total: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _derive_line_total(self) -> "OrderItem":
        if self.line_total is None:
            self.line_total = self.unit_price * self.quantity
        return self


class Order(SharedDocument):
    """
    Buyer order. Created at checkout, mutated only by the settlement
    transaction, never deleted.
    """

    order_id: str
    seller_id: str
    buyer_id: Optional[str] = None

    total_amount: Decimal = Field(ge=0)
    amount_paid: Decimal = ZERO
    balance_due: Optional[Decimal] = None
    subtotal: Decimal = ZERO
    platform_fee: Decimal = ZERO

    # Dashboard statuses beyond OrderStatus pass through untouched
    status: str = OrderStatus.PENDING_PAYMENT.value
    items: List[OrderItem] = Field(default_factory=list)
    is_direct_fulfillment: bool = False

    @model_validator(mode="after")
    def _derive_balance(self) -> "Order":
        if self.balance_due is None:
            self.balance_due = self.total_amount - self.amount_paid
        return self

    @classmethod
    def from_document(cls, order_id: str, doc: Dict[str, Any]) -> "Order":
        """The document key is the order id; an id stored in the body is ignored."""
        body = {k: v for k, v in doc.items() if k not in ("orderId", "order_id")}
        return cls.model_validate({**body, "orderId": order_id})


class Payment(SharedDocument):
    """One gateway transaction outcome. Immutable once written."""

    payment_id: str
    order_id: str
    buyer_id: Optional[str] = None
    reference: str
    amount: Decimal
    status: PaymentStatus
    payment_method: str
    transaction_id: Optional[str] = None
    gateway_response: Optional[str] = None
    payment_date: datetime = Field(default_factory=datetime.utcnow)


class SellerEarnings(SharedDocument):
    seller_id: str
    total_earnings: Decimal = ZERO
    unpaid_earnings: Decimal = ZERO


class PartnerEarnings(SharedDocument):
    partner_id: str
    total_earnings: Decimal = ZERO
    unpaid_earnings: Decimal = ZERO
    paid_earnings: Decimal = ZERO


class AttributedSale(SharedDocument):
    """A sale credited to a referring growth partner."""

    sale_id: str
    order_id: str
    partner_id: str
    campaign_id: Optional[str] = None
    sale_amount: Decimal
    commission_rate: Decimal
    commission_earned: Decimal
    date: datetime = Field(default_factory=datetime.utcnow)
    payout_status: PayoutStatus = PayoutStatus.UNPAID


class PointsLedgerEvent(BaseModel):
    """Append-only points ledger row."""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    user_id: str
    points: int
    action: Literal["award"] = "award"
    reason_code: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str
    event_hash: str
    issued_by: str = "system"
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================================
# SECTION 4: PLATFORM CONFIGURATION SNAPSHOT
# ============================================================================

class PointsConfig(BaseModel):
    """
    Loyalty multipliers. Missing or zero values fall back to the platform
    default of 1 point per 10 currency units.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    buyer_purchase_points_per_10: Decimal = Field(
        default=Decimal("1"), alias="buyerPurchasePointsPer10"
    )
    seller_sale_points_per_10: Decimal = Field(
        default=Decimal("1"), alias="sellerSalePointsPer10"
    )
    global_seller_point_multiplier: Optional[Decimal] = Field(
        default=None, alias="globalSellerPointMultiplier"
    )

    @field_validator("buyer_purchase_points_per_10", "seller_sale_points_per_10", mode="before")
    @classmethod
    def _default_when_falsy(cls, v):
        return v or Decimal("1")


class PlatformConfig(BaseModel):
    """Immutable snapshot injected into one settlement's side effects."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    points: PointsConfig = Field(default_factory=PointsConfig, alias="pointsConfig")
    loaded_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================================
# SECTION 5: GATEWAY PAYLOADS
# ============================================================================

class ChargeData(BaseModel):
    """`data` block of an inbound notification. Untrusted hint only."""
    model_config = ConfigDict(extra="allow")

    reference: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    amount: Optional[int] = None
    channel: Optional[str] = None
    status: Optional[str] = None
    gateway_response: Optional[str] = None
    id: Optional[Union[int, str]] = None

    @field_validator("metadata", mode="before")
    @classmethod
    def _decode_metadata(cls, v):
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            return json.loads(v)
        return v


class WebhookNotification(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str
    data: ChargeData = Field(default_factory=ChargeData)


class GatewayTransaction(ChargeData):
    """Authoritative transaction record returned by the verify endpoint."""

    status: str
    amount: int = Field(ge=0)

    @computed_field
    @property
    def paid_amount(self) -> Decimal:
        return Decimal(self.amount) / Decimal(100)

    @property
    def is_successful(self) -> bool:
        return self.status == "success"

    @property
    def payment_method(self) -> str:
        return f"Paystack - {self.channel}"


# ============================================================================
# SECTION 6: METADATA TAGGED UNION
# ============================================================================

class SubscriptionRenewalMetadata(BaseModel):
    """Seller marketing-plan renewal."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: Literal["subscription_renewal"] = "subscription_renewal"
    plan_id: str = Field(alias="planId", min_length=1)
    duration_in_months: int = Field(default=1, alias="durationInMonths", ge=1)
    user_id: Optional[str] = Field(default=None, alias="userId")


class OrderSettlementMetadata(BaseModel):
    """Checkout payment against an existing order."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: Literal["order_settlement"] = "order_settlement"
    order_id: Optional[str] = Field(default=None, alias="orderId")
    buyer_id: Optional[str] = Field(default=None, alias="buyerId")
    is_partial_payment: bool = Field(default=False, alias="isPartialPayment")
    referral_code: Optional[str] = Field(default=None, alias="referralCode")


def _metadata_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "subscription_renewal" if value.get("planId") or value.get("plan_id") else "order_settlement"
    return getattr(value, "kind", "order_settlement")


PaymentMetadata = Annotated[
    Union[
        Annotated[SubscriptionRenewalMetadata, Tag("subscription_renewal")],
        Annotated[OrderSettlementMetadata, Tag("order_settlement")],
    ],
    Discriminator(_metadata_kind),
]

_metadata_adapter = TypeAdapter(PaymentMetadata)


def parse_payment_metadata(raw: Dict[str, Any]) -> Union[SubscriptionRenewalMetadata, OrderSettlementMetadata]:
    """Validate gateway metadata into one of the two request shapes."""
    return _metadata_adapter.validate_python(raw or {})


# ============================================================================
# SECTION 7: SETTLEMENT RESULTS + OUTBOX
# ============================================================================

class PartyContact(BaseModel):
    """Denormalised display data read inside the settlement transaction."""
    user_id: Optional[str] = None
    name: str
    email: Optional[str] = None
    is_verified: bool = False


class SettlementOutboxEntry(BaseModel):
    """
    Durable "settlement completed, side effects pending" marker.

    Written in the same atomic unit as the order update, then drained by the
    outbox processor. Everything the side effects need is captured here so
    they never re-read mutable order state.
    """
    model_config = ConfigDict(extra="ignore")

    outbox_id: str
    reference: str
    order_id: str
    payment_id: str

    paid_amount: Decimal
    payment_method: str
    is_order_fully_paid: bool

    order_total: Decimal
    order_subtotal: Decimal
    platform_fee: Decimal
    is_direct_fulfillment: bool
    items: List[OrderItem] = Field(default_factory=list)

    buyer: PartyContact
    seller: PartyContact
    referral_code: Optional[str] = None
    config: PlatformConfig = Field(default_factory=PlatformConfig)

    status: OutboxStatus = OutboxStatus.PENDING
    completed_effects: List[SideEffectName] = Field(default_factory=list)
    abandoned_effects: List[SideEffectName] = Field(default_factory=list)
    attempt_count: int = 0
    last_error: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def settled_effects(self) -> set:
        return set(self.completed_effects) | set(self.abandoned_effects)


class SettlementResult(BaseModel):
    """Outcome of one committed settlement transaction."""
    order_id: str
    reference: str
    payment_id: str
    amount_paid: Decimal
    balance_due: Decimal
    status: str
    is_order_fully_paid: bool
    buyer: PartyContact
    seller: PartyContact
    outbox_id: Optional[str] = None


class WebhookOutcome(BaseModel):
    """What the webhook endpoint answers, plus post-response work."""
    status_code: int = 200
    success: bool = True
    message: str
    reference: Optional[str] = None
    already_processed: bool = False
    redirect_url: Optional[str] = None
    outbox_id: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.redirect_url:
            body["redirect_url"] = self.redirect_url
        return body
