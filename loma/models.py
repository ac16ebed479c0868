"""Wire models for the practice API.

Field names follow the API's camelCase JSON.  Read models allow extra
fields because the server returns more than the client uses; request
models are strict about the fields that matter and are validated before
anything is sent.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from loma.errors import ValidationError
from loma.time_utils import ensure_utc, to_iso

BillingType = Literal["private_pay", "insurance"]
ClientStatus = Literal["inquiry", "active", "inactive", "terminated"]
TaskType = Literal["session_note", "intake_docs", "invoice", "custom"]
TaskStatus = Literal["pending", "in_progress", "completed"]
CardType = Literal["virtual", "physical"]


def money(value: Any) -> Optional[str]:
    """Return *value* as a two-decimal string, ``None`` when absent or invalid."""

    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            return None
        return str(amount.quantize(Decimal("0.01")))
    except (ArithmeticError, ValueError):
        return None


# ----------------------------------------------------------------------
# Read models
# ----------------------------------------------------------------------
class Client(BaseModel):
    id: int
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    billingType: Optional[str] = None
    sessionCost: Optional[str] = None
    noShowFee: Optional[str] = None
    status: Optional[str] = None
    primaryDiagnosisCode: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("sessionCost", "noShowFee", mode="before")
    @classmethod
    def _amount_as_text(cls, value: Any) -> Optional[str]:
        return money(value)

    @property
    def is_insurance(self) -> bool:
        return (self.billingType or "").strip().lower() == "insurance"


class Session(BaseModel):
    id: int
    patientId: Optional[int] = None
    date: datetime
    duration: Optional[int] = None
    type: Optional[str] = None
    status: str = "scheduled"
    notes: Optional[str] = None
    cptCode: Optional[str] = None
    therapistId: Optional[Any] = None
    client: Optional[Client] = None
    patient: Optional[Client] = None

    model_config = ConfigDict(extra="allow")

    @property
    def billed_client(self) -> Optional[Client]:
        return self.client or self.patient


class Meeting(BaseModel):
    id: Any
    date: datetime
    duration: Optional[int] = None
    title: Optional[str] = None
    therapistId: Optional[Any] = None

    model_config = ConfigDict(extra="allow")


class Task(BaseModel):
    id: int
    title: str = ""
    type: str = "custom"
    status: str = "pending"
    patientId: Optional[int] = None
    sessionId: Optional[int] = None
    categoryId: Optional[int] = None
    dueDate: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    isAutomated: bool = False

    model_config = ConfigDict(extra="allow")


class BillClient(BaseModel):
    id: Optional[int] = None
    name: str = "Unknown"
    billingType: str = "insurance"

    model_config = ConfigDict(extra="allow")


class Bill(BaseModel):
    """Row of the combined billing list: a claim or an invoice."""

    id: int
    type: Literal["insurance", "private_pay"]
    client: BillClient
    amount: str = "0.00"
    dateOfService: Optional[str] = None
    status: str
    createdAt: Optional[str] = None
    claimNumber: Optional[str] = None
    invoiceId: Optional[str] = None
    invoiceNumber: Optional[str] = None
    stripeHostedUrl: Optional[str] = None


class Transaction(BaseModel):
    id: int
    cardId: int
    amount: str = "0"
    currency: str = "usd"
    description: str = ""
    type: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    taxDeductible: bool = False
    createdAt: datetime

    model_config = ConfigDict(extra="allow")


class Card(BaseModel):
    id: int
    stripeCardId: Optional[str] = None
    cardholderName: str = ""
    last4: Optional[str] = None
    brand: Optional[str] = None
    expMonth: Optional[int] = None
    expYear: Optional[int] = None
    status: str = "active"
    type: str = "virtual"
    cardLimit: Optional[str] = None
    transactions: List[Transaction] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


# ----------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------
class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def payload(self) -> Dict[str, Any]:
        """Return the JSON body for this request, omitting unset optionals."""

        return self.model_dump(mode="json", exclude_none=True)


class ClientCreate(_Request):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    billingType: BillingType = "private_pay"
    sessionCost: Optional[str] = None
    noShowFee: Optional[str] = None
    status: ClientStatus = "inquiry"
    organizationId: Optional[int] = None
    primaryTherapistId: Optional[int] = None

    @field_validator("sessionCost", "noShowFee", mode="before")
    @classmethod
    def _amount_as_text(cls, value: Any) -> Optional[str]:
        return money(value)


class SessionCreate(_Request):
    patientId: int
    date: datetime
    duration: int = Field(gt=0)
    status: Literal["scheduled"] = "scheduled"
    type: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["date"] = to_iso(self.date)
        return body


class CompleteSession(_Request):
    action: Literal["complete"] = "complete"

    def payload(self) -> Dict[str, Any]:
        return {"status": "completed"}


class NoShowSession(_Request):
    action: Literal["no-show"] = "no-show"
    invoiceFee: bool = False

    def payload(self) -> Dict[str, Any]:
        return {"status": "no_show"}


class RescheduleSession(_Request):
    action: Literal["reschedule"] = "reschedule"
    date: datetime
    duration: Optional[int] = Field(default=None, gt=0)

    @field_validator("date")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"date": to_iso(self.date)}
        if self.duration is not None:
            body["duration"] = self.duration
        return body


class SessionNotes(_Request):
    action: Literal["notes"] = "notes"
    notes: str

    def payload(self) -> Dict[str, Any]:
        return {"action": "notes", "notes": self.notes}


class InvoiceSession(_Request):
    action: Literal["invoice"] = "invoice"
    amount: str
    description: str

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> str:
        parsed = money(value)
        if parsed is None:
            raise ValueError("amount must be a number")
        return parsed

    def payload(self) -> Dict[str, Any]:
        return {
            "action": "invoice",
            "shouldInvoice": True,
            "invoice": {"amount": self.amount, "description": self.description},
        }


SessionAction = Annotated[
    Union[CompleteSession, NoShowSession, RescheduleSession, SessionNotes, InvoiceSession],
    Field(discriminator="action"),
]

_SESSION_ACTION_ADAPTER: TypeAdapter = TypeAdapter(SessionAction)


def parse_session_action(data: Dict[str, Any]):
    """Validate a raw action body into its tagged request model."""

    try:
        return _SESSION_ACTION_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc), error_code="invalid_session_action") from exc


class BillForm(_Request):
    """What the clinician enters to create a bill of either kind."""

    patientId: int
    sessionId: Optional[int] = None
    dateOfService: datetime
    amount: Optional[str] = None
    description: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> Optional[str]:
        return money(value)


class ClaimCreate(_Request):
    """CMS-1500 claim submission (boxes the client pre-fills)."""

    patientId: int
    sessionId: Optional[int] = None
    dateOfService: str
    chargeAmount: str
    patientName: str
    cptCode: str
    primaryDiagnosisCode: str
    placeOfService: str
    renderingProviderNpi: str = ""
    units: int = 1
    daysOrUnits: int = 1
    acceptAssignment: bool = True
    signatureOnFile: bool = True
    renderingProviderQualifier: str = "1D"
    patientRelationshipToInsured: str = "self"
    insuranceType: Optional[str] = None
    totalCharge: Optional[str] = None
    amountPaid: str = "0.00"
    balanceDue: Optional[str] = None
    federalTaxId: Optional[str] = None
    billingProviderName: Optional[str] = None
    billingProviderAddress: Optional[str] = None
    billingProviderCity: Optional[str] = None
    billingProviderState: Optional[str] = None
    billingProviderZip: Optional[str] = None
    billingProviderPhone: Optional[str] = None
    billingProviderNpi: Optional[str] = None
    serviceFacilityName: Optional[str] = None
    serviceFacilityAddress: Optional[str] = None
    serviceFacilityCity: Optional[str] = None
    serviceFacilityState: Optional[str] = None
    serviceFacilityZip: Optional[str] = None
    serviceFacilityNpi: Optional[str] = None

    @field_validator("chargeAmount", mode="before")
    @classmethod
    def _charge(cls, value: Any) -> str:
        parsed = money(value)
        if parsed is None:
            raise ValueError("chargeAmount must be a number")
        return parsed


class InvoiceCreate(_Request):
    patientId: int
    sessionId: Optional[int] = None
    amount: float = Field(gt=0)
    description: str = "Therapy session"
    serviceDate: datetime

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["serviceDate"] = to_iso(self.serviceDate)
        return body


class CardMetadata(_Request):
    department: Optional[str] = None
    purpose: Optional[str] = None


class CardCreate(_Request):
    type: CardType = "virtual"
    cardholderName: str = Field(min_length=1)
    cardholderEmail: Optional[str] = None
    spendingLimit: int = Field(default=1000, gt=0)
    currency: str = "usd"
    acceptTerms: bool = Field(default=False, validate_default=True)
    metadata: CardMetadata = Field(default_factory=CardMetadata)

    @field_validator("acceptTerms")
    @classmethod
    def _terms(cls, value: bool) -> bool:
        if not value:
            raise ValueError("You must accept the cardholder terms")
        return value

    def payload(self) -> Dict[str, Any]:
        return {
            "cardholderName": self.cardholderName,
            "cardholderEmail": self.cardholderEmail,
            "cardLimit": self.spendingLimit,
            "currency": self.currency,
            "metadata": self.metadata.model_dump(mode="json"),
        }


class TaskCreate(_Request):
    title: str = Field(min_length=1)
    patientId: Optional[int] = None
    type: TaskType = "custom"
    status: TaskStatus = "pending"
    dueDate: Optional[datetime] = None
    categoryId: Optional[int] = None
    isAutomated: bool = False

    def payload(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "patientId": self.patientId,
            "type": self.type,
            "status": self.status,
            "dueDate": to_iso(self.dueDate) if self.dueDate else None,
            "isAutomated": self.isAutomated,
            "categoryId": self.categoryId,
        }


M = TypeVar("M", bound=BaseModel)


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def validate_request(model: Type[M], data: Any) -> M:
    """Validate *data* against *model*, raising :class:`loma.errors.ValidationError`."""

    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc), error_code="invalid_request") from exc


def parse_many(model: Type[M], rows: List[Any]) -> List[M]:
    """Parse *rows* into *model*, skipping rows the model rejects."""

    parsed: List[M] = []
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except PydanticValidationError:
            continue
    return parsed


__all__ = [
    "Bill",
    "BillClient",
    "BillForm",
    "Card",
    "CardCreate",
    "ClaimCreate",
    "Client",
    "ClientCreate",
    "CompleteSession",
    "InvoiceCreate",
    "InvoiceSession",
    "Meeting",
    "NoShowSession",
    "RescheduleSession",
    "Session",
    "SessionAction",
    "SessionCreate",
    "SessionNotes",
    "Task",
    "TaskCreate",
    "Transaction",
    "money",
    "parse_many",
    "parse_session_action",
    "validate_request",
]
