"""Claims, invoices and the combined bills list.

Which kind of bill a client gets depends only on their billing type:
insurance clients get a CMS-1500 claim, everyone else a hosted invoice.
Claim PDFs are served by the API; before opening one the claim is checked
for completeness so the clinician can fix their profile first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from loma.api_client import ApiClient
from loma.config import DEFAULT_CHARGE_AMOUNT
from loma.errors import LomaError, ValidationError
from loma.models import Bill, BillForm, ClaimCreate, Client, InvoiceCreate, money, validate_request
from loma.notifications import Notifier
from loma.resources import BillingResource, ClientsResource, SessionsResource, run_mutation
from loma.time_utils import parse_datetime, to_date_string

logger = structlog.get_logger(__name__)

DEFAULT_CPT_CODE = "90834"
DEFAULT_DIAGNOSIS_CODE = "F41.1"
OFFICE_PLACE_OF_SERVICE = "11"
TELEHEALTH_PLACE_OF_SERVICE = "02"
PROFILE_PATH = "/profile"

NO_HOSTED_URL_MESSAGE = "This invoice does not have a Stripe hosted URL yet."

# billing profile field -> claim fields it fills
_PROFILE_FIELDS = {
    "npi": ("renderingProviderNpi",),
    "ssnOrEin": ("federalTaxId",),
    "practiceName": ("billingProviderName", "serviceFacilityName"),
    "billingAddress": ("billingProviderAddress", "serviceFacilityAddress"),
    "billingCity": ("billingProviderCity", "serviceFacilityCity"),
    "billingState": ("billingProviderState", "serviceFacilityState"),
    "billingZip": ("billingProviderZip", "serviceFacilityZip"),
    "phoneNumber": ("billingProviderPhone",),
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ----------------------------------------------------------------------
# Bill rows
# ----------------------------------------------------------------------
def _bill_client(row: Mapping[str, Any], billing_type: str) -> Dict[str, Any]:
    client = row.get("client")
    if not isinstance(client, Mapping):
        return {"id": row.get("patientId"), "name": "Unknown", "billingType": billing_type}
    normalised = dict(client)
    if normalised.get("name") is None:
        normalised["name"] = "Unknown"
    if normalised.get("billingType") is None:
        normalised["billingType"] = billing_type
    return normalised


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def claim_to_bill(row: Mapping[str, Any]) -> Bill:
    return Bill(
        id=row["id"],
        type="insurance",
        client=_bill_client(row, "insurance"),
        amount=str(row.get("chargeAmount") or "0.00"),
        dateOfService=_text(row.get("dateOfService")),
        status=row.get("status") or "draft",
        createdAt=_text(row.get("createdAt")),
        claimNumber=_text(row.get("claimNumber")),
    )


def invoice_to_bill(row: Mapping[str, Any]) -> Bill:
    return Bill(
        id=row["id"],
        type="private_pay",
        client=_bill_client(row, "private_pay"),
        amount=str(row.get("total") or row.get("subtotal") or "0.00"),
        dateOfService=_text(row.get("createdAt")),
        status=row.get("status") or "pending",
        createdAt=_text(row.get("createdAt")),
        invoiceId=_text(row.get("stripeInvoiceId")),
        invoiceNumber=_text(row.get("invoiceNumber")),
        stripeHostedUrl=row.get("stripeHostedUrl"),
    )


def _convert_rows(rows: List[Any], convert: Callable[[Mapping[str, Any]], Bill]) -> List[Bill]:
    """Convert billing rows, skipping any the bill model rejects."""

    bills: List[Bill] = []
    for row in rows:
        if not isinstance(row, Mapping) or row.get("id") is None:
            continue
        try:
            bills.append(convert(row))
        except PydanticValidationError as exc:
            logger.warning("bill_row_skipped", bill_id=row.get("id"), errors=exc.error_count())
    return bills


def merge_bills(claims: List[Any], invoices: List[Any]) -> List[Bill]:
    """Combine claims and invoices, newest first."""

    bills = _convert_rows(claims, claim_to_bill) + _convert_rows(invoices, invoice_to_bill)
    return sorted(bills, key=lambda bill: parse_datetime(bill.createdAt) or _EPOCH, reverse=True)


def _is_telehealth(session: Optional[Mapping[str, Any]]) -> bool:
    if not session:
        return False
    if session.get("isTelehealth"):
        return True
    if session.get("placeOfService") == TELEHEALTH_PLACE_OF_SERVICE:
        return True
    markers = (session.get("type"), session.get("location"))
    return any(isinstance(value, str) and "telehealth" in value.lower() for value in markers)


def apply_billing_profile(body: Dict[str, Any], profile: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fill provider and facility boxes from the clinician's billing profile."""

    if not profile:
        return body
    for source, targets in _PROFILE_FIELDS.items():
        value = profile.get(source)
        if not value:
            continue
        for target in targets:
            if not body.get(target):
                body[target] = str(value)
    organisation_npi = profile.get("groupNpi") or profile.get("npi")
    if organisation_npi:
        body.setdefault("billingProviderNpi", str(organisation_npi))
        body.setdefault("serviceFacilityNpi", str(organisation_npi))
    return body


# ----------------------------------------------------------------------
# Claim PDF gate
# ----------------------------------------------------------------------
@dataclass
class ClaimPreview:
    """What to do when the clinician asks to view a claim.

    ``action`` is ``"open"`` when the PDF can be shown straight away and
    ``"prompt"`` when fields are missing and the clinician should choose
    between completing their profile and generating anyway.
    """

    claim_id: Any
    action: str
    url: str
    missing_fields: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    complete_profile_path: str = PROFILE_PATH

    @property
    def needs_attention(self) -> bool:
        return self.action == "prompt"


class BillingDesk:
    """Create bills and open the documents behind them."""

    def __init__(
        self,
        api: ApiClient,
        billing: BillingResource,
        clients: ClientsResource,
        sessions: SessionsResource,
        notifier: Notifier,
        *,
        default_charge: str = DEFAULT_CHARGE_AMOUNT,
    ) -> None:
        self.api = api
        self.billing = billing
        self.clients = clients
        self.sessions = sessions
        self.notifier = notifier
        self.default_charge = default_charge

    # ------------------------------------------------------------------
    # Creating bills
    # ------------------------------------------------------------------
    def create_bill(self, client: Union[Client, Mapping[str, Any]], form: Any) -> Any:
        """Create a claim for insurance clients and an invoice for everyone else."""

        target = client if isinstance(client, Client) else validate_request(Client, dict(client))
        request = validate_request(BillForm, form)
        session = self._session_for(target, request)
        if target.is_insurance:
            return self._submit_claim(self.build_claim(target, request, session))
        return self._submit_invoice(self.build_invoice(target, request, session))

    def build_claim(
        self,
        client: Client,
        form: BillForm,
        session: Optional[Mapping[str, Any]] = None,
    ) -> ClaimCreate:
        session = session or {}
        charge = form.amount or self.default_charge
        body: Dict[str, Any] = {
            "patientId": form.patientId,
            "sessionId": form.sessionId,
            "dateOfService": to_date_string(form.dateOfService),
            "chargeAmount": charge,
            "totalCharge": money(charge),
            "balanceDue": money(charge),
            "patientName": client.name,
            "cptCode": session.get("cptCode") or DEFAULT_CPT_CODE,
            "primaryDiagnosisCode": client.primaryDiagnosisCode or DEFAULT_DIAGNOSIS_CODE,
            "placeOfService": TELEHEALTH_PLACE_OF_SERVICE if _is_telehealth(session) else OFFICE_PLACE_OF_SERVICE,
            "renderingProviderNpi": "",
        }
        insurance_type = getattr(client, "insuranceType", None)
        if insurance_type:
            body["insuranceType"] = insurance_type
        apply_billing_profile(body, self.billing.profile())
        return validate_request(ClaimCreate, body)

    def build_invoice(
        self,
        client: Client,
        form: BillForm,
        session: Optional[Mapping[str, Any]] = None,
    ) -> InvoiceCreate:
        amount = form.amount or client.sessionCost or self.default_charge
        description = form.description
        if not description and session:
            session_type = session.get("type") or "individual"
            duration = session.get("duration") or 50
            description = f"{session_type} therapy session ({duration} min)"
        return validate_request(
            InvoiceCreate,
            {
                "patientId": form.patientId,
                "sessionId": form.sessionId,
                "amount": float(amount),
                "description": description or "Therapy session",
                "serviceDate": form.dateOfService,
            },
        )

    def _session_for(self, client: Client, form: BillForm) -> Optional[Dict[str, Any]]:
        if form.sessionId is None:
            return None
        return self.sessions.find(form.sessionId, client=client.id)

    def _submit_claim(self, claim: ClaimCreate) -> Any:
        result = run_mutation(
            "create_claim",
            self.notifier,
            lambda: self.billing.create_claim(claim.payload()),
            error_title="Error creating claim",
        )
        logger.info("claim_created", patient_id=claim.patientId, session_id=claim.sessionId)
        self.notifier.success(
            "Insurance claim created", "Your CMS-1500 claim has been generated successfully."
        )
        return result

    def _submit_invoice(self, invoice: InvoiceCreate) -> Any:
        result = run_mutation(
            "create_invoice",
            self.notifier,
            lambda: self.billing.create_invoice(invoice.payload()),
            error_title="Error creating invoice",
        )
        logger.info("invoice_created", patient_id=invoice.patientId, session_id=invoice.sessionId)
        self.notifier.success("Invoice sent", "Your invoice has been sent via Stripe.")
        return result

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    def list_bills(self) -> List[Bill]:
        """Return claims and invoices as one list; each side fails to ``[]``."""

        return self.billing.cache.fetch(
            self.billing.key(),
            lambda: merge_bills(self.billing.claims(), self.billing.invoices()),
            stale_seconds=self.billing.stale_seconds,
        )

    def claims_by_status(self, status: str = "all") -> List[Bill]:
        claims = _convert_rows(self.billing.claims(), claim_to_bill)
        if status == "all":
            return claims
        return [claim for claim in claims if claim.status == status]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    def claim_pdf_url(self, claim_id: Any, download: bool = False) -> str:
        url = self.api.url(f"/api/cms1500-pdf/{claim_id}/pdf")
        return f"{url}?download=true" if download else url

    @staticmethod
    def claim_pdf_filename(bill: Union[Bill, Mapping[str, Any]]) -> str:
        if isinstance(bill, Bill):
            number, bill_id = bill.claimNumber, bill.id
        else:
            number, bill_id = bill.get("claimNumber"), bill.get("id")
        return f"CMS1500_{number or bill_id}.pdf"

    def preview_claim(self, claim_id: Any) -> ClaimPreview:
        """Check a claim's completeness before its PDF is opened.

        A failed check does not block the clinician; the PDF is opened as is.
        """

        url = self.claim_pdf_url(claim_id)
        try:
            validation = self.billing.validate_claim(claim_id)
        except LomaError as exc:
            logger.warning("claim_validation_unavailable", claim_id=claim_id, error=exc.message)
            return ClaimPreview(claim_id=claim_id, action="open", url=url)

        if not isinstance(validation, Mapping) or validation.get("isValid"):
            return ClaimPreview(claim_id=claim_id, action="open", url=url)
        return ClaimPreview(
            claim_id=claim_id,
            action="prompt",
            url=url,
            missing_fields=[str(item) for item in validation.get("missingFields") or []],
            recommendations=[str(item) for item in validation.get("recommendations") or []],
        )

    def generate_anyway(self, preview: ClaimPreview) -> str:
        self.notifier.success(
            "PDF Generated", "Note: Some fields may be incomplete due to missing information."
        )
        return preview.url

    def invoice_url(self, bill: Bill) -> str:
        if not bill.stripeHostedUrl:
            error = ValidationError(NO_HOSTED_URL_MESSAGE, error_code="invoice_not_available")
            self.notifier.notify_error(error, "Invoice not available")
            raise error
        return bill.stripeHostedUrl

    def open_bill(self, bill: Bill) -> Union[ClaimPreview, str]:
        """Return the claim preview for claims or the hosted URL for invoices."""

        if bill.type == "insurance":
            return self.preview_claim(bill.id)
        return self.invoice_url(bill)


__all__ = [
    "BillingDesk",
    "ClaimPreview",
    "DEFAULT_CPT_CODE",
    "DEFAULT_DIAGNOSIS_CODE",
    "apply_billing_profile",
    "claim_to_bill",
    "invoice_to_bill",
    "merge_bills",
]
