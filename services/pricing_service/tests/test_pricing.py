# CREATE FILE: services/pricing_service/tests/test_pricing.py

import io
import json
import os
import tempfile
import pytest
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal

from utils.logging import StructuredLogger
from services.pricing_service.pricing import (
    FareComposer, FareRequest, BoxSize, CustomerPayment, DeliveryDurationError
)
from services.tax_service.oracle import TaxOracle, MockTaxOracle
from services.tax_service.tax import TaxService, TaxAddress


class RecordingOracle(TaxOracle):
    """Fixed-tax oracle that records the taxable amounts it was asked about"""

    def __init__(self, tax_cents=147):
        self.tax_cents = tax_cents
        self.amounts = []

    async def calculate(self, currency, line_items, customer_address, address_source):
        self.amounts.append(line_items[0]["amount"])
        return {
            "tax_amount_exclusive": self.tax_cents,
            "tax_breakdown": [
                {"jurisdiction": {"level": "city", "display_name": "Saint Louis", "state": "MO"}},
                {"jurisdiction": {"level": "county", "display_name": "St. Louis County", "state": "MO"}}
            ]
        }


class TestFareComposer:

    @pytest.fixture
    def logger(self):
        return StructuredLogger("pricing_service_test", stream=io.StringIO())

    @pytest.fixture
    def oracle(self):
        return RecordingOracle()

    @pytest.fixture
    def composer(self, oracle, logger):
        """Composer with default rate table and a fixed-tax oracle"""
        return FareComposer(tax_service=TaxService(oracle, logger=logger), logger=logger)

    @pytest.fixture
    def address(self):
        return TaxAddress(line1="1200 Market St", city="Saint Louis", state="MO", postal_code="63103")

    @pytest.fixture
    def standard_request(self):
        """10 miles, 30 billable minutes, Large box, $5 tip, off-peak"""
        return FareRequest(
            distance_miles=10.0,
            billable_minutes=30,
            box_size=BoxSize.LARGE,
            tip=5.0
        )

    def test_fare_components(self, composer, standard_request):
        """Test every line item of the standard scenario"""
        components = composer.calculate_fare_components(standard_request)
        driver = components.driver_earnings
        company = components.company_revenue

        assert driver.base_pay == Decimal('3.00')
        assert driver.distance_pay == Decimal('3.50')  # 10 * 0.35
        assert driver.time_pay == Decimal('4.00')  # 0.5h * 8.00
        assert driver.size_bonus == Decimal('1.00')
        assert driver.tip == Decimal('5.00')
        assert driver.total == Decimal('16.50')

        assert company.service_fee == Decimal('0.99')  # 3.99 - 3.00
        assert company.distance_fee == Decimal('1.50')  # 10 * 0.15
        assert company.time_fee == Decimal('1.00')  # 0.5h * 2.00
        assert company.total == Decimal('3.49')

        assert components.base_price == Decimal('3.99')
        assert components.surcharges == Decimal('2.00')
        # 3.99 + 2.00 + 1.50 + 1.00 + 3.50 + 4.00 + 1.00
        assert components.subtotal == Decimal('16.99')
        assert components.peak_multiplier == Decimal('1')

    @pytest.mark.asyncio
    async def test_compose_standard_scenario(self, composer, oracle, standard_request, address):
        """Tax on 16.99 only; tip added after tax"""
        ledger = await composer.compose(standard_request, address)

        assert oracle.amounts == [1699]
        assert ledger.customer_payment.subtotal == Decimal('16.99')
        assert ledger.customer_payment.taxes == Decimal('1.47')
        assert ledger.customer_payment.tip == Decimal('5.00')
        # 16.99 + 1.47 + 5.00
        assert ledger.customer_payment.total == Decimal('23.46')
        assert ledger.tax.tax_jurisdiction_name == "St. Louis County, MO"
        assert ledger.driver_earnings.total == Decimal('16.50')
        assert ledger.company_revenue.total == Decimal('3.49')

    @pytest.mark.asyncio
    async def test_tip_excluded_from_tax_base(self, composer, oracle, standard_request, address):
        await composer.compose(standard_request, address)
        await composer.compose(replace(standard_request, tip=50.0), address)

        assert oracle.amounts[0] == oracle.amounts[1] == 1699

    @pytest.mark.asyncio
    async def test_tip_not_in_company_revenue(self, composer, standard_request, address):
        no_tip = await composer.compose(replace(standard_request, tip=0), address)
        big_tip = await composer.compose(replace(standard_request, tip=20), address)

        assert no_tip.company_revenue.total == big_tip.company_revenue.total
        assert big_tip.driver_earnings.total - no_tip.driver_earnings.total == Decimal('20.00')

    def test_extra_large_size_asymmetry(self, composer):
        """XL: customer surcharge $4, driver bonus $2"""
        components = composer.calculate_fare_components(
            FareRequest(distance_miles=0, billable_minutes=0, box_size=BoxSize.EXTRA_LARGE)
        )

        assert components.surcharges == Decimal('4.00')
        assert components.driver_earnings.size_bonus == Decimal('2.00')

    @pytest.mark.parametrize("size", ["S", "M", "Small", "medium"])
    def test_small_and_medium_have_no_size_charges(self, composer, size):
        components = composer.calculate_fare_components(
            FareRequest(distance_miles=5, billable_minutes=20, box_size=size)
        )
        assert components.surcharges == Decimal('0.00')
        assert components.driver_earnings.size_bonus == Decimal('0.00')

    def test_unknown_box_size(self, composer):
        with pytest.raises(ValueError):
            composer.calculate_fare_components(FareRequest(distance_miles=1, billable_minutes=10, box_size="XXL"))

    def test_multiple_boxes(self, composer):
        """Each additional box adds $1.50 to customer surcharges"""
        components = composer.calculate_fare_components(
            FareRequest(distance_miles=1, billable_minutes=10, box_size=BoxSize.LARGE, number_of_boxes=3)
        )
        # 2.00 size + 2 * 1.50
        assert components.surcharges == Decimal('5.00')

    def test_rush_applies_peak_multiplier_to_time(self, composer, standard_request):
        components = composer.calculate_fare_components(replace(standard_request, is_rush=True))

        assert components.peak_multiplier == Decimal('1.2')
        assert components.driver_earnings.time_pay == Decimal('4.80')  # 4.00 * 1.2
        assert components.company_revenue.time_fee == Decimal('1.20')  # 1.00 * 1.2
        # Distance and base are unaffected
        assert components.driver_earnings.distance_pay == Decimal('3.50')
        assert components.company_revenue.service_fee == Decimal('0.99')

    def test_weekday_evening_pickup_is_peak(self, composer, standard_request):
        monday_evening = datetime(2024, 1, 15, 17, 30)
        components = composer.calculate_fare_components(replace(standard_request, requested_at=monday_evening))
        assert components.driver_earnings.time_pay == Decimal('4.80')

    def test_saturday_evening_pickup_is_not_peak(self, composer, standard_request):
        saturday_evening = datetime(2024, 1, 20, 17, 30)
        components = composer.calculate_fare_components(replace(standard_request, requested_at=saturday_evening))
        assert components.driver_earnings.time_pay == Decimal('4.00')

    @pytest.mark.asyncio
    async def test_donation_is_fee_bearing_but_tax_exempt(self, composer, oracle, standard_request, address):
        ledger = await composer.compose(replace(standard_request, is_donation=True), address)

        assert oracle.amounts == []
        assert ledger.customer_payment.taxes == Decimal('0.00')
        assert ledger.tax.tax_jurisdiction_name == "Tax-exempt (donation)"
        assert ledger.tax.grand_total == Decimal('16.99')
        assert ledger.customer_payment.total == Decimal('21.99')

    @pytest.mark.asyncio
    async def test_ledger_reconciles(self, composer, standard_request, address):
        """Subtotal = driver pay (excl. tip) + company revenue + size surcharge"""
        ledger = await composer.compose(standard_request, address)
        driver = ledger.driver_earnings
        company = ledger.company_revenue
        customer = ledger.customer_payment

        assert customer.subtotal - (driver.total - driver.tip) - company.total == customer.surcharges
        assert company.service_fee == customer.base_price - driver.base_pay

        validation = composer.validate_ledger(ledger)
        assert validation.is_valid
        assert validation.difference == Decimal('0')

    @pytest.mark.asyncio
    async def test_tampered_ledger_fails_validation(self, composer, standard_request, address):
        ledger = await composer.compose(standard_request, address)
        tampered = replace(ledger, customer_payment=CustomerPayment(
            base_price=ledger.customer_payment.base_price,
            surcharges=ledger.customer_payment.surcharges,
            subtotal=Decimal('15.99'),
            taxes=ledger.customer_payment.taxes,
            tip=ledger.customer_payment.tip
        ))

        validation = composer.validate_ledger(tampered)

        assert not validation.is_valid
        assert validation.difference == Decimal('1.00')
        assert "Payment mismatch" in validation.explanation

    @pytest.mark.asyncio
    async def test_finalize_clamps_overrun(self, composer, standard_request, address):
        """55 minutes against a 30 minute estimate is paid as 40"""
        pickup = datetime(2024, 1, 16, 10, 0)
        ledger = await composer.finalize_at_delivery(
            standard_request, estimated_minutes=30,
            pickup_time=pickup, dropoff_time=pickup + timedelta(minutes=55),
            address=address
        )

        assert ledger.request.billable_minutes == 40
        # 40/60 * 8.00 = 5.333 -> 5.33
        assert ledger.driver_earnings.time_pay == Decimal('5.33')

    @pytest.mark.asyncio
    async def test_finalize_rejects_negative_duration(self, composer, standard_request, address):
        pickup = datetime(2024, 1, 16, 10, 0)
        with pytest.raises(DeliveryDurationError):
            await composer.finalize_at_delivery(
                standard_request, estimated_minutes=30,
                pickup_time=pickup, dropoff_time=pickup - timedelta(minutes=1),
                address=address
            )

    @pytest.mark.asyncio
    async def test_to_dict(self, composer, standard_request, address):
        result = (await composer.compose(standard_request, address)).to_dict()

        assert result["driver_earnings"]["total"] == 16.5
        assert result["company_revenue"]["total"] == 3.49
        assert result["customer_payment"]["subtotal"] == 16.99
        assert result["customer_payment"]["total"] == 23.46
        assert result["tax"]["tax_jurisdiction_name"] == "St. Louis County, MO"
        assert result["metadata"]["box_size"] == "L"

    @pytest.mark.asyncio
    async def test_payment_explanation(self, composer, standard_request, address):
        ledger = await composer.compose(standard_request, address)
        explanation = composer.get_payment_explanation(ledger)

        assert "TOTAL: $23.46" in explanation
        assert "TOTAL: $16.50" in explanation
        assert "TOTAL: $3.49" in explanation

    def test_deterministic_results(self, composer, standard_request):
        """Same inputs always produce the same line items"""
        assert composer.calculate_fare_components(standard_request) == \
            composer.calculate_fare_components(standard_request)


class TestFareConfig:

    @pytest.fixture
    def override_config(self):
        """Rate table file overriding the base price only"""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            json.dump({"base_price": 4.99}, f)
            temp_path = f.name

        yield temp_path

        os.unlink(temp_path)

    def test_config_loading_fallback(self, monkeypatch):
        """Missing config file falls back to built-in defaults"""
        monkeypatch.delenv("USE_REAL_STRIPE", raising=False)
        composer = FareComposer("/nonexistent/path.json")

        assert composer.config["base_price"] == 3.99
        assert isinstance(composer.tax_service.oracle, MockTaxOracle)

    def test_config_override(self, override_config, monkeypatch):
        monkeypatch.delenv("USE_REAL_STRIPE", raising=False)
        composer = FareComposer(override_config)

        components = composer.calculate_fare_components(FareRequest(distance_miles=0, billable_minutes=0))

        assert components.base_price == Decimal('4.99')
        assert components.company_revenue.service_fee == Decimal('1.99')
        # Untouched keys keep their defaults
        assert components.driver_earnings.base_pay == Decimal('3.00')

    def test_partial_size_tier_override(self, monkeypatch):
        """Overriding one size tier keeps the other tiers at their defaults"""
        monkeypatch.delenv("USE_REAL_STRIPE", raising=False)
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            json.dump({"size_surcharges": {"L": 2.50}, "driver_size_bonuses": {"XL": 2.25}}, f)
            temp_path = f.name

        try:
            composer = FareComposer(temp_path)
        finally:
            os.unlink(temp_path)

        large = composer.calculate_fare_components(
            FareRequest(distance_miles=0, billable_minutes=0, box_size=BoxSize.LARGE)
        )
        extra_large = composer.calculate_fare_components(
            FareRequest(distance_miles=0, billable_minutes=0, box_size=BoxSize.EXTRA_LARGE)
        )

        assert large.surcharges == Decimal('2.50')
        assert large.driver_earnings.size_bonus == Decimal('1.00')
        assert extra_large.surcharges == Decimal('4.00')
        assert extra_large.driver_earnings.size_bonus == Decimal('2.25')

    def test_overrides_do_not_leak_into_defaults(self, monkeypatch):
        monkeypatch.delenv("USE_REAL_STRIPE", raising=False)
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            json.dump({"size_surcharges": {"XL": 9.00}}, f)
            temp_path = f.name

        try:
            FareComposer(temp_path)
        finally:
            os.unlink(temp_path)

        assert FareComposer("/nonexistent/path.json").config["size_surcharges"]["XL"] == 4.00

    def test_missing_size_tier_is_rejected(self, monkeypatch):
        """A rate table without the requested tier raises instead of charging nothing"""
        monkeypatch.delenv("USE_REAL_STRIPE", raising=False)
        composer = FareComposer("/nonexistent/path.json")
        del composer.config["size_surcharges"]["XL"]

        with pytest.raises(ValueError, match="size_surcharges"):
            composer.calculate_fare_components(
                FareRequest(distance_miles=0, billable_minutes=0, box_size=BoxSize.EXTRA_LARGE)
            )
