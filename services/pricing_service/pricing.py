# CREATE FILE: services/pricing_service/pricing.py

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Any, Optional
import json
import os

from utils.logging import StructuredLogger, get_logger
from services.routing_service.time_calculator import (
    calculate_actual_duration, calculate_billable_time, get_time_peak_multiplier
)
from services.tax_service.oracle import create_tax_oracle
from services.tax_service.tax import TaxService, TaxAddress, TaxCalculationInput, TaxCalculationResult

CENTS = Decimal('0.01')

DEFAULT_CONFIG: Dict[str, Any] = {
    "base_pay": 3.00,
    "base_price": 3.99,
    "driver_distance_rate": 0.35,
    "company_distance_rate": 0.15,
    "driver_time_rate": 8.00,
    "company_time_rate": 2.00,
    "size_surcharges": {"S": 0.00, "M": 0.00, "L": 2.00, "XL": 4.00},
    "driver_size_bonuses": {"S": 0.00, "M": 0.00, "L": 1.00, "XL": 2.00},
    "peak_multiplier": 1.2,
    "multi_box_fee": 1.50,
    "tax_timeout_seconds": 10.0,
    "tax_oracle_timeout_seconds": 8.0,
    "mock_tax": {"rate_pct": 0.0, "jurisdictions": []},
    "tracking_number_max_retries": 10
}


def _merge_config(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Layer overrides onto defaults; nested tables such as size tiers merge key by key"""
    merged = {}
    for key, value in defaults.items():
        merged[key] = _merge_config(value, {}) if isinstance(value, dict) else value

    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_config(merged[key], value)
        else:
            merged[key] = value

    return merged


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class DeliveryDurationError(ValueError):
    """Dropoff recorded before pickup"""
    pass


class BoxSize(str, Enum):
    SMALL = "S"
    MEDIUM = "M"
    LARGE = "L"
    EXTRA_LARGE = "XL"

    @classmethod
    def parse(cls, value: Any) -> "BoxSize":
        if isinstance(value, cls):
            return value

        key = str(value).strip().upper().replace("-", " ")
        aliases = {
            "S": cls.SMALL, "SMALL": cls.SMALL,
            "M": cls.MEDIUM, "MEDIUM": cls.MEDIUM,
            "L": cls.LARGE, "LARGE": cls.LARGE,
            "XL": cls.EXTRA_LARGE, "EXTRA LARGE": cls.EXTRA_LARGE,
        }
        if key not in aliases:
            raise ValueError(f"Unknown box size: {value}")
        return aliases[key]


@dataclass(frozen=True)
class FareRequest:
    distance_miles: float
    billable_minutes: float
    box_size: BoxSize = BoxSize.MEDIUM
    tip: float = 0.0
    is_donation: bool = False
    is_rush: bool = False
    number_of_boxes: int = 1
    requested_at: Optional[datetime] = None


@dataclass(frozen=True)
class DriverEarnings:
    base_pay: Decimal
    distance_pay: Decimal
    time_pay: Decimal
    size_bonus: Decimal
    tip: Decimal

    @property
    def total(self) -> Decimal:
        return self.base_pay + self.distance_pay + self.time_pay + self.size_bonus + self.tip


@dataclass(frozen=True)
class CompanyRevenue:
    service_fee: Decimal
    distance_fee: Decimal
    time_fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.service_fee + self.distance_fee + self.time_fee


@dataclass(frozen=True)
class FareComponents:
    """Every line item of a fare before tax"""
    driver_earnings: DriverEarnings
    company_revenue: CompanyRevenue
    base_price: Decimal
    surcharges: Decimal
    peak_multiplier: Decimal

    @property
    def subtotal(self) -> Decimal:
        """Taxable amount: everything the customer pays except tip and tax"""
        driver = self.driver_earnings
        company = self.company_revenue
        return (self.base_price + self.surcharges
                + driver.distance_pay + company.distance_fee
                + driver.time_pay + company.time_fee
                + driver.size_bonus)


@dataclass(frozen=True)
class CustomerPayment:
    base_price: Decimal
    surcharges: Decimal
    subtotal: Decimal
    taxes: Decimal
    tip: Decimal

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.taxes + self.tip


@dataclass(frozen=True)
class FareLedger:
    request: FareRequest
    driver_earnings: DriverEarnings
    company_revenue: CompanyRevenue
    customer_payment: CustomerPayment
    tax: TaxCalculationResult
    peak_multiplier: Decimal
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        driver = self.driver_earnings
        company = self.company_revenue
        customer = self.customer_payment

        return {
            "driver_earnings": {
                "base_pay": float(driver.base_pay),
                "distance_pay": float(driver.distance_pay),
                "time_pay": float(driver.time_pay),
                "size_bonus": float(driver.size_bonus),
                "tip": float(driver.tip),
                "total": float(driver.total)
            },
            "company_revenue": {
                "service_fee": float(company.service_fee),
                "distance_fee": float(company.distance_fee),
                "time_fee": float(company.time_fee),
                "total": float(company.total)
            },
            "customer_payment": {
                "base_price": float(customer.base_price),
                "surcharges": float(customer.surcharges),
                "subtotal": float(customer.subtotal),
                "taxes": float(customer.taxes),
                "tip": float(customer.tip),
                "total": float(customer.total)
            },
            "tax": self.tax.to_dict(),
            "metadata": {
                "distance_miles": self.request.distance_miles,
                "billable_minutes": self.request.billable_minutes,
                "box_size": self.request.box_size.value,
                "number_of_boxes": self.request.number_of_boxes,
                "is_donation": self.request.is_donation,
                "is_rush": self.request.is_rush,
                "peak_multiplier": float(self.peak_multiplier)
            }
        }


@dataclass(frozen=True)
class LedgerValidation:
    is_valid: bool
    difference: Decimal
    explanation: str


class FareComposer:
    """Deterministic fare composer splitting one booking between customer, driver and company"""

    def __init__(self, config_path: str = None, tax_service: TaxService = None,
                 logger: StructuredLogger = None):
        self.config = self._load_config(config_path)
        self.logger = logger or get_logger("pricing_service")
        self.tax_service = tax_service or TaxService(
            oracle=create_tax_oracle(self.config, self.logger),
            logger=self.logger,
            timeout_seconds=float(self.config["tax_timeout_seconds"])
        )

    def _load_config(self, config_path: str = None) -> Dict[str, Any]:
        """Load the rate table from JSON, layered over the built-in defaults"""
        if config_path is None:
            config_path = os.path.join(os.path.dirname(__file__), '../../config/defaults.json')

        try:
            with open(config_path, 'r') as f:
                return _merge_config(DEFAULT_CONFIG, json.load(f))
        except FileNotFoundError:
            return _merge_config(DEFAULT_CONFIG, {})

    def _rate(self, key: str) -> Decimal:
        return Decimal(str(self.config[key]))

    def _tier(self, table: str, box_size: BoxSize) -> Any:
        tiers = self.config[table]
        if box_size.value not in tiers:
            raise ValueError(f"Rate table '{table}' has no entry for box size {box_size.value}")
        return tiers[box_size.value]

    def peak_multiplier_for(self, request: FareRequest) -> Decimal:
        """Rush bookings and weekday evening pickups are paid at the peak rate"""
        is_peak = request.is_rush or (
            request.requested_at is not None and get_time_peak_multiplier(request.requested_at) > 1.0
        )
        return self._rate("peak_multiplier") if is_peak else Decimal('1')

    def calculate_fare_components(self, request: FareRequest) -> FareComponents:
        """Calculate every pre-tax line item for a fare"""
        box_size = BoxSize.parse(request.box_size)
        distance = Decimal(str(request.distance_miles))
        hours = Decimal(str(request.billable_minutes)) / Decimal('60')
        multiplier = self.peak_multiplier_for(request)

        base_pay = money(self.config["base_pay"])
        base_price = money(self.config["base_price"])

        driver_earnings = DriverEarnings(
            base_pay=base_pay,
            distance_pay=money(distance * self._rate("driver_distance_rate")),
            time_pay=money(hours * self._rate("driver_time_rate") * multiplier),
            size_bonus=money(self._tier("driver_size_bonuses", box_size)),
            tip=money(request.tip)
        )

        # Base price spread over driver base pay is the company's service fee
        company_revenue = CompanyRevenue(
            service_fee=base_price - base_pay,
            distance_fee=money(distance * self._rate("company_distance_rate")),
            time_fee=money(hours * self._rate("company_time_rate") * multiplier)
        )

        surcharges = money(self._tier("size_surcharges", box_size))
        if request.number_of_boxes > 1:
            surcharges += money((request.number_of_boxes - 1) * self._rate("multi_box_fee"))

        return FareComponents(
            driver_earnings=driver_earnings,
            company_revenue=company_revenue,
            base_price=base_price,
            surcharges=surcharges,
            peak_multiplier=multiplier
        )

    async def compose(self, request: FareRequest, address: TaxAddress) -> FareLedger:
        """
        Compose the full ledger for a booking.

        Tax is quoted on the subtotal only; the tip is added after tax and
        goes entirely to the driver.
        """
        request = replace(request, box_size=BoxSize.parse(request.box_size))
        components = self.calculate_fare_components(request)
        subtotal = components.subtotal

        with self.logger.operation_context("tax_calculation", subtotal=subtotal):
            tax = await self.tax_service.calculate_tax(TaxCalculationInput(
                address=address,
                amount=subtotal,
                is_donation=request.is_donation
            ))

        ledger = FareLedger(
            request=request,
            driver_earnings=components.driver_earnings,
            company_revenue=components.company_revenue,
            customer_payment=CustomerPayment(
                base_price=components.base_price,
                surcharges=components.surcharges,
                subtotal=subtotal,
                taxes=tax.tax_amount,
                tip=components.driver_earnings.tip
            ),
            tax=tax,
            peak_multiplier=components.peak_multiplier
        )

        self.logger.business_event(
            "fare_composed",
            amount=ledger.customer_payment.total,
            subtotal=subtotal,
            taxes=tax.tax_amount,
            driver_total=ledger.driver_earnings.total,
            company_total=ledger.company_revenue.total,
            tax_jurisdiction=tax.tax_jurisdiction_name
        )

        return ledger

    async def finalize_at_delivery(self, request: FareRequest, estimated_minutes: int,
                                   pickup_time: datetime, dropoff_time: datetime,
                                   address: TaxAddress) -> FareLedger:
        """Re-run the time-cap clamp on the actual duration and recompose the ledger"""
        actual_minutes = calculate_actual_duration(pickup_time, dropoff_time)
        if actual_minutes < 0:
            raise DeliveryDurationError(
                f"Dropoff {dropoff_time.isoformat()} precedes pickup {pickup_time.isoformat()}"
            )

        billable_minutes = calculate_billable_time(actual_minutes, estimated_minutes)
        if billable_minutes != actual_minutes:
            self.logger.info(
                "Delivery time clamped to cap",
                actual_minutes=actual_minutes,
                billable_minutes=billable_minutes,
                estimated_minutes=estimated_minutes
            )

        return await self.compose(replace(request, billable_minutes=billable_minutes), address)

    def validate_ledger(self, ledger: FareLedger) -> LedgerValidation:
        """Check that every dollar of the subtotal is accounted for"""
        driver = ledger.driver_earnings
        company = ledger.company_revenue
        customer = ledger.customer_payment

        expected_subtotal = (customer.base_price + customer.surcharges
                             + driver.distance_pay + company.distance_fee
                             + driver.time_pay + company.time_fee
                             + driver.size_bonus)

        # Size surcharges are retained outside company revenue
        allocated = (driver.total - driver.tip) + company.total + customer.surcharges
        difference = abs(customer.subtotal - allocated)

        problems = []
        if company.service_fee != customer.base_price - driver.base_pay:
            problems.append("service fee does not equal base price minus base pay")
        if customer.subtotal != expected_subtotal:
            problems.append(f"subtotal ${customer.subtotal} != line items ${expected_subtotal}")
        if customer.taxes != ledger.tax.tax_amount:
            problems.append("customer taxes differ from tax calculation")
        if difference >= CENTS:
            problems.append(f"subtotal ${customer.subtotal} != driver + company + surcharges ${allocated}")

        if problems:
            return LedgerValidation(False, difference, "Payment mismatch: " + "; ".join(problems))
        return LedgerValidation(True, difference, "Payment breakdown is balanced")

    def get_payment_explanation(self, ledger: FareLedger) -> str:
        driver = ledger.driver_earnings
        company = ledger.company_revenue
        customer = ledger.customer_payment

        return "\n".join([
            "Payment Breakdown:",
            "",
            "Customer Pays:",
            f"  Base service: ${customer.base_price:.2f}",
            f"  Distance: ${driver.distance_pay + company.distance_fee:.2f}",
            f"  Time: ${driver.time_pay + company.time_fee:.2f}",
            f"  Size and box surcharges: ${customer.surcharges + driver.size_bonus:.2f}",
            f"  Tax ({ledger.tax.tax_jurisdiction_name}): ${customer.taxes:.2f}",
            f"  Tip: ${customer.tip:.2f}",
            f"TOTAL: ${customer.total:.2f}",
            "",
            "Driver Earns:",
            f"  Base pay: ${driver.base_pay:.2f}",
            f"  Distance pay: ${driver.distance_pay:.2f}",
            f"  Time pay: ${driver.time_pay:.2f}",
            f"  Size bonus: ${driver.size_bonus:.2f}",
            f"  Tip (100%): ${driver.tip:.2f}",
            f"TOTAL: ${driver.total:.2f}",
            "",
            "Company Gets:",
            f"  Service fee: ${company.service_fee:.2f}",
            f"  Distance fee: ${company.distance_fee:.2f}",
            f"  Time fee: ${company.time_fee:.2f}",
            f"TOTAL: ${company.total:.2f}",
        ])
