# CREATE FILE: services/tax_service/tax.py

import asyncio
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, List, Optional, Union

from utils.logging import StructuredLogger, get_logger, sanitize_pii
from .oracle import TaxOracle

CENTS = Decimal('0.01')
RATE_PLACES = Decimal('0.0001')

DONATION_JURISDICTION = "Tax-exempt (donation)"
UNAVAILABLE_JURISDICTION = "Tax calculation unavailable"
LINE_ITEM_REFERENCE = "return-delivery-service"


@dataclass(frozen=True)
class TaxAddress:
    line1: str
    city: str
    state: str
    postal_code: str
    line2: Optional[str] = None
    country: str = "US"

    def to_oracle_address(self) -> Dict[str, str]:
        address = {
            "line1": self.line1,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country or "US"
        }
        if self.line2:
            address["line2"] = self.line2
        return address


@dataclass(frozen=True)
class TaxCalculationInput:
    address: TaxAddress
    amount: Decimal  # taxable subtotal in dollars, excludes tips
    is_donation: bool = False


@dataclass(frozen=True)
class TaxCalculationResult:
    tax_amount: Decimal
    effective_tax_rate: Decimal
    tax_jurisdiction_name: str
    grand_total: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tax_amount": float(self.tax_amount),
            "effective_tax_rate": float(self.effective_tax_rate),
            "tax_jurisdiction_name": self.tax_jurisdiction_name,
            "grand_total": float(self.grand_total)
        }


@dataclass(frozen=True)
class TaxQuote:
    """Successful oracle response"""
    tax_amount_cents: int
    breakdown: List[Dict[str, Any]]


@dataclass(frozen=True)
class OracleFailure:
    """Oracle call that raised or timed out"""
    error: Exception


OracleOutcome = Union[TaxQuote, OracleFailure]


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def select_jurisdiction(breakdown: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Pick the jurisdiction to report a quote under.

    Precedence is county > city > state. The first county entry ends the
    scan; otherwise the last city entry seen, then the last state entry.
    """
    county = None
    city = None
    state = None

    for entry in breakdown or []:
        jurisdiction = entry.get("jurisdiction")
        if not jurisdiction:
            continue

        level = (jurisdiction.get("level") or "").lower()
        if level == "county":
            county = jurisdiction
            break
        elif level == "city":
            city = jurisdiction
        elif level == "state":
            state = jurisdiction

    return county or city or state


def jurisdiction_display_name(jurisdiction: Optional[Dict[str, Any]], address: TaxAddress) -> str:
    """Format "St. Louis County, MO"; falls back to the address city and state"""
    if jurisdiction:
        name = jurisdiction.get("display_name") or jurisdiction.get("name") or ""
        if name:
            state = jurisdiction.get("state") or address.state
            return f"{name}, {state}"

    return f"{address.city}, {address.state}"


class TaxService:
    """Jurisdiction-aware sales tax on delivery fees, backed by an external oracle"""

    def __init__(self, oracle: TaxOracle, logger: StructuredLogger = None,
                 timeout_seconds: float = 10.0, currency: str = "usd"):
        self.oracle = oracle
        self.logger = logger or get_logger("tax_service")
        self.timeout_seconds = timeout_seconds
        self.currency = currency

    async def calculate_tax(self, tax_input: TaxCalculationInput) -> TaxCalculationResult:
        """
        Calculate sales tax for a taxable subtotal at an address.

        Donations are fee-bearing but tax-exempt and never reach the oracle.
        If the oracle fails the checkout continues with zero tax; the
        shortfall is logged as a finance alert for reconciliation.
        """
        amount = Decimal(str(tax_input.amount))

        if tax_input.is_donation:
            return self.calculate_donation_tax(amount)

        outcome = await self._request_quote(amount, tax_input.address)

        if isinstance(outcome, OracleFailure):
            return self._degrade_to_fallback(amount, tax_input.address, outcome)

        return self._build_result(amount, tax_input.address, outcome)

    def calculate_donation_tax(self, amount: Decimal) -> TaxCalculationResult:
        return TaxCalculationResult(
            tax_amount=Decimal('0.00'),
            effective_tax_rate=Decimal('0.0000'),
            tax_jurisdiction_name=DONATION_JURISDICTION,
            grand_total=Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)
        )

    async def _request_quote(self, amount: Decimal, address: TaxAddress) -> OracleOutcome:
        line_items = [{"amount": to_cents(amount), "reference": LINE_ITEM_REFERENCE}]

        try:
            response = await asyncio.wait_for(
                self.oracle.calculate(
                    currency=self.currency,
                    line_items=line_items,
                    customer_address=address.to_oracle_address(),
                    address_source="shipping"
                ),
                timeout=self.timeout_seconds
            )
            return TaxQuote(
                tax_amount_cents=int(response.get("tax_amount_exclusive") or 0),
                breakdown=list(response.get("tax_breakdown") or [])
            )
        except Exception as e:
            # Any oracle failure (including timeout) becomes a value for the fallback step
            return OracleFailure(error=e)

    def _degrade_to_fallback(self, amount: Decimal, address: TaxAddress,
                             failure: OracleFailure) -> TaxCalculationResult:
        self.logger.error(
            "Tax calculation failed, using zero-tax fallback",
            error=failure.error,
            address=sanitize_pii(asdict(address))
        )
        self.logger.finance_alert(
            "tax_under_collected",
            amount=amount,
            reason=type(failure.error).__name__,
            state=address.state
        )

        return TaxCalculationResult(
            tax_amount=Decimal('0.00'),
            effective_tax_rate=Decimal('0.0000'),
            tax_jurisdiction_name=UNAVAILABLE_JURISDICTION,
            grand_total=amount.quantize(CENTS, rounding=ROUND_HALF_UP)
        )

    def _build_result(self, amount: Decimal, address: TaxAddress, quote: TaxQuote) -> TaxCalculationResult:
        tax_amount = Decimal(quote.tax_amount_cents) / Decimal('100')
        effective_tax_rate = tax_amount / amount if amount > 0 else Decimal('0')

        jurisdiction = select_jurisdiction(quote.breakdown)
        jurisdiction_name = jurisdiction_display_name(jurisdiction, address)

        self.logger.debug(
            "Tax calculated",
            tax_amount=tax_amount,
            jurisdiction=jurisdiction_name,
            breakdown_entries=len(quote.breakdown)
        )

        return TaxCalculationResult(
            tax_amount=tax_amount.quantize(CENTS, rounding=ROUND_HALF_UP),
            effective_tax_rate=effective_tax_rate.quantize(RATE_PLACES, rounding=ROUND_HALF_UP),
            tax_jurisdiction_name=jurisdiction_name,
            grand_total=(amount + tax_amount).quantize(CENTS, rounding=ROUND_HALF_UP)
        )
