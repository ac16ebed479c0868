"""Issued cards and the spending tracked on them.

Card listings come back as ``{"success": true, "cards": [...]}`` with each
card carrying its transactions.  When issuing is not available for the
practice, the listing is empty and carries guidance instead of an error.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

from loma.api_client import ApiClient
from loma.envelope import decode_envelope
from loma.errors import InvalidTransitionError, LomaError, is_banking_setup_error, is_issuing_setup_error
from loma.models import CardCreate, validate_request
from loma.notifications import Notifier
from loma.resources import CARDS_PATH, CardsResource, UserContext, run_mutation
from loma.time_utils import ensure_utc, parse_datetime, utc_now

logger = structlog.get_logger(__name__)

SETUP_MESSAGE = "Sign up for Loma business banking to access cards"
SETUP_ERROR_CODES = ("STRIPE_NOT_CONFIGURED", "STRIPE_ISSUING_NOT_ENABLED")

_CARD_TRANSITIONS = {
    "active": ("inactive", "canceled"),
    "inactive": ("active", "canceled"),
    "canceled": (),
}

_CENTS = Decimal("0.01")


@dataclass
class CardListing:
    cards: List[Dict[str, Any]] = field(default_factory=list)
    setup_required: bool = False
    setup_message: Optional[str] = None


@dataclass
class CategorySpend:
    category: str
    amount: Decimal
    percentage: Decimal


@dataclass
class DailySpend:
    date: str
    amount: Decimal


@dataclass
class SpendingSummary:
    total: Decimal = Decimal("0.00")
    tax_deductible: Decimal = Decimal("0.00")
    non_deductible: Decimal = Decimal("0.00")
    count: int = 0
    average: Decimal = Decimal("0.00")
    categories: List[CategorySpend] = field(default_factory=list)
    daily: List[DailySpend] = field(default_factory=list)
    change_from_last_month: Decimal = Decimal("0.0")


# ----------------------------------------------------------------------
# Spending
# ----------------------------------------------------------------------
def _amount(value: Any) -> Decimal:
    try:
        return abs(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def flatten_transactions(cards: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Return every card's transactions, each tagged with its card."""

    rows: List[Dict[str, Any]] = []
    for card in cards:
        for transaction in card.get("transactions") or []:
            row = dict(transaction)
            row["cardName"] = card.get("cardholderName") or ""
            row["cardLast4"] = card.get("last4")
            row["cardBrand"] = card.get("brand")
            rows.append(row)
    return rows


def filter_transactions(
    transactions: Iterable[Mapping[str, Any]],
    *,
    card_id: Any = "all",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    search: str = "",
) -> List[Mapping[str, Any]]:
    needle = (search or "").strip().lower()
    lower = ensure_utc(start) if start is not None else None
    upper = ensure_utc(end) if end is not None else None
    matched = []
    for row in transactions:
        if card_id not in (None, "all") and str(row.get("cardId")) != str(card_id):
            continue
        created = parse_datetime(row.get("createdAt"))
        if created is None and (lower is not None or upper is not None):
            continue
        if lower is not None and created < lower:
            continue
        if upper is not None and created > upper:
            continue
        if needle and needle not in str(row.get("description") or "").lower() and needle not in str(
            row.get("cardName") or ""
        ).lower():
            continue
        matched.append(row)
    return matched


def _month_before(moment: datetime) -> tuple:
    if moment.month == 1:
        return moment.year - 1, 12
    return moment.year, moment.month - 1


def summarize_spending(
    transactions: List[Mapping[str, Any]],
    *,
    history: Optional[Iterable[Mapping[str, Any]]] = None,
    now: Optional[datetime] = None,
) -> SpendingSummary:
    """Totals, category split and daily trend for *transactions*.

    Amounts are summed as absolute values.  ``history`` (normally every
    transaction, unfiltered) is used for the change against last month.
    """

    total = Decimal("0")
    deductible = Decimal("0")
    by_category: Dict[str, Decimal] = defaultdict(Decimal)
    by_day: Dict[str, Decimal] = defaultdict(Decimal)
    for row in transactions:
        amount = _amount(row.get("amount"))
        total += amount
        if row.get("taxDeductible"):
            deductible += amount
        by_category[row.get("category") or "Other"] += amount
        created = parse_datetime(row.get("createdAt"))
        if created is not None:
            by_day[created.date().isoformat()] += amount

    categories = [
        CategorySpend(
            category=name,
            amount=amount.quantize(_CENTS),
            percentage=(amount / total * 100).quantize(Decimal("0.1")) if total else Decimal("0.0"),
        )
        for name, amount in sorted(by_category.items(), key=lambda item: item[1], reverse=True)
    ]
    daily = [DailySpend(date=day, amount=amount.quantize(_CENTS)) for day, amount in sorted(by_day.items())]

    year, month = _month_before(ensure_utc(now) if now is not None else utc_now())
    last_month = Decimal("0")
    for row in history if history is not None else transactions:
        created = parse_datetime(row.get("createdAt"))
        if created is not None and (created.year, created.month) == (year, month):
            last_month += _amount(row.get("amount"))
    change = ((total - last_month) / last_month * 100).quantize(Decimal("0.1")) if last_month else Decimal("0.0")

    count = len(transactions)
    return SpendingSummary(
        total=total.quantize(_CENTS),
        tax_deductible=deductible.quantize(_CENTS),
        non_deductible=(total - deductible).quantize(_CENTS),
        count=count,
        average=(total / count).quantize(_CENTS) if count else Decimal("0.00"),
        categories=categories,
        daily=daily,
        change_from_last_month=change,
    )


# ----------------------------------------------------------------------
# Cards
# ----------------------------------------------------------------------
class CardDesk:
    """Card issuing, card status and transaction classification."""

    def __init__(
        self,
        api: ApiClient,
        cards: CardsResource,
        notifier: Notifier,
        *,
        user: Optional[UserContext] = None,
    ) -> None:
        self.api = api
        self.cards = cards
        self.notifier = notifier
        self.user = user

    def _load(self) -> CardListing:
        try:
            body = self.api.get(CARDS_PATH)
        except LomaError as exc:
            logger.warning("card_listing_failed", error=exc.message, issuing=is_issuing_setup_error(exc))
            return CardListing(setup_required=True, setup_message=SETUP_MESSAGE)
        envelope = decode_envelope(body)
        if envelope is None:
            return CardListing()
        if envelope.success is False and envelope.error in SETUP_ERROR_CODES:
            logger.info("card_issuing_unavailable", reason=envelope.error)
            return CardListing(setup_required=True, setup_message=envelope.message or SETUP_MESSAGE)
        cards = envelope.extra("cards")
        return CardListing(cards=[card for card in cards or [] if isinstance(card, dict)])

    def list_cards(self) -> CardListing:
        return self.cards.listing(self._load)

    def transactions(self) -> List[Dict[str, Any]]:
        return flatten_transactions(self.list_cards().cards)

    def create_card(self, data: Any) -> Any:
        request = validate_request(CardCreate, data)
        if not request.cardholderEmail and self.user is not None and self.user.email:
            request = request.model_copy(update={"cardholderEmail": self.user.email})

        result = run_mutation(
            "create_card",
            self.notifier,
            lambda: self.cards.create(request.type, request.payload()),
            on_error=self._report_issuing_error,
        )
        self.notifier.success("Card Created", "Your new card has been created successfully.")
        return result

    def _report_issuing_error(self, error: LomaError) -> None:
        message = error.message or "Failed to create card."
        if is_banking_setup_error(error):
            self.notifier.error(
                "Business Banking Required",
                "Please set up your business banking account in the Financials tab before issuing cards.",
            )
        elif "not set up to use Issuing" in message:
            self.notifier.error(
                "Stripe Issuing Not Enabled",
                "Card issuing must be activated in your Stripe Dashboard. "
                "Visit Stripe Dashboard > Issuing to get started.",
            )
        elif "card_issuing can only be requested" in message:
            self.notifier.error(
                "Platform Not Onboarded",
                "Your platform needs to be onboarded for Stripe Issuing. "
                "Contact support to enable this feature.",
            )
        else:
            self.notifier.error("Error", message)

    def update_card_status(self, card: Mapping[str, Any], status: str) -> Any:
        """Activate, pause or cancel *card*; cancelling cannot be undone."""

        current = card.get("status") or "active"

        def _send() -> Any:
            if status not in _CARD_TRANSITIONS.get(current, ()):
                raise InvalidTransitionError(
                    f"Cannot change card status from {current} to {status}",
                    error_code="invalid_card_transition",
                    details={"from": current, "to": status},
                )
            return self.cards.update_status(card.get("id"), status)

        result = run_mutation("update_card_status", self.notifier, _send)
        logger.info("card_status_changed", card_id=card.get("id"), status=status)
        return result

    def backfill_transactions(self) -> Any:
        result = run_mutation(
            "backfill_transactions",
            self.notifier,
            lambda: self.api.post("/api/stripe/backfill-transactions", {}),
            error_title="Backfill Failed",
        )
        self.cards.invalidate()
        processed = result.get("totalProcessed", 0) if isinstance(result, dict) else 0
        added = result.get("totalNew", 0) if isinstance(result, dict) else 0
        self.notifier.success(
            "Backfill Completed",
            f"Successfully processed {processed} transactions. {added} new transactions added.",
        )
        return result

    def set_tax_deductible(self, transaction: Mapping[str, Any], tax_deductible: bool) -> Any:
        transaction_id = transaction.get("id")
        result = run_mutation(
            "set_tax_deductible",
            self.notifier,
            lambda: self.api.patch(
                f"/api/stripe/transaction/{transaction_id}/tax-deductible",
                {"taxDeductible": bool(tax_deductible)},
            ),
            on_error=lambda _: self.notifier.error("Error", "Failed to update tax deductible status"),
        )
        self.cards.invalidate()
        self.notifier.success("Success", "Tax deductible status updated successfully")
        return result


__all__ = [
    "CardDesk",
    "CardListing",
    "SpendingSummary",
    "filter_transactions",
    "flatten_transactions",
    "summarize_spending",
]
