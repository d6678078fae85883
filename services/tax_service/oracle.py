# CREATE FILE: services/tax_service/oracle.py

import asyncio
import os
import time
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, List, Optional

from utils.logging import StructuredLogger, get_logger


class OracleError(Exception):
    """Raised when a tax oracle cannot produce a quote"""
    pass


class TaxOracle(ABC):
    """
    External tax-calculation provider.

    Implementations return:
        {
            "tax_amount_exclusive": int,  # minor units (cents)
            "tax_breakdown": [
                {"jurisdiction": {"level": str, "display_name": str, "state": str}, ...},
            ]
        }
    """

    @abstractmethod
    async def calculate(self, currency: str, line_items: List[Dict[str, Any]],
                        customer_address: Dict[str, Any], address_source: str) -> Dict[str, Any]:
        raise NotImplementedError


class MockTaxOracle(TaxOracle):
    """Flat-rate tax oracle for local development (zero tax unless configured)"""

    def __init__(self, rate_pct: float = 0.0, jurisdictions: Optional[List[Dict[str, Any]]] = None):
        self.rate = Decimal(str(rate_pct)) / Decimal('100')
        self.jurisdictions = jurisdictions or []

    async def calculate(self, currency: str, line_items: List[Dict[str, Any]],
                        customer_address: Dict[str, Any], address_source: str) -> Dict[str, Any]:
        amount_cents = sum(int(item["amount"]) for item in line_items)
        tax_cents = (Decimal(amount_cents) * self.rate).quantize(Decimal('1'), rounding=ROUND_HALF_UP)

        return {
            "tax_amount_exclusive": int(tax_cents),
            "tax_breakdown": [
                {"jurisdiction": dict(jurisdiction)} for jurisdiction in self.jurisdictions
            ]
        }


def _field(obj: Any, name: str, default: Any = None) -> Any:
    # Stripe objects are dict-like in some SDK versions and attribute-only in others
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class StripeTaxOracle(TaxOracle):
    """Stripe Tax adapter exposing the TaxOracle shape"""

    def __init__(self, api_key: str = None, timeout_seconds: float = 8.0,
                 logger: StructuredLogger = None):
        import stripe

        self.stripe = stripe
        self.api_key = api_key or os.getenv("STRIPE_SECRET_KEY")
        self.timeout_seconds = timeout_seconds
        self.logger = logger or get_logger("tax_oracle")

        if not self.api_key:
            raise ValueError("Stripe secret key not set. Please set STRIPE_SECRET_KEY.")

        # HTTP timeout matches the oracle timeout so a stalled request frees its worker thread
        self.client = stripe.StripeClient(
            self.api_key,
            http_client=stripe.RequestsClient(timeout=self.timeout_seconds),
            max_network_retries=0
        )

    def _create_calculation(self, currency: str, line_items: List[Dict[str, Any]],
                            customer_address: Dict[str, Any], address_source: str) -> Any:
        return self.client.tax.calculations.create(params={
            "currency": currency,
            "line_items": line_items,
            "customer_details": {
                "address": customer_address,
                "address_source": address_source
            },
            "expand": ["line_items.data.tax_breakdown"]
        })

    async def calculate(self, currency: str, line_items: List[Dict[str, Any]],
                        customer_address: Dict[str, Any], address_source: str) -> Dict[str, Any]:
        start_time = time.time()
        success = False

        try:
            calculation = await asyncio.wait_for(
                asyncio.to_thread(self._create_calculation, currency, line_items,
                                  customer_address, address_source),
                timeout=self.timeout_seconds
            )
            success = True
        except asyncio.TimeoutError as e:
            raise OracleError(f"Stripe Tax timed out after {self.timeout_seconds}s") from e
        except self.stripe.StripeError as e:
            raise OracleError(f"Stripe Tax error: {e}") from e
        finally:
            self.logger.api_call(
                target_service="stripe",
                endpoint="/v1/tax/calculations",
                duration_ms=(time.time() - start_time) * 1000,
                success=success
            )

        return self.normalize_calculation(calculation)

    @staticmethod
    def normalize_calculation(calculation: Any) -> Dict[str, Any]:
        """Flatten a Stripe Tax calculation into the TaxOracle response shape"""
        breakdown = []

        line_items = _field(_field(calculation, "line_items"), "data") or []
        for line_item in line_items:
            for entry in _field(line_item, "tax_breakdown") or []:
                jurisdiction = _field(entry, "jurisdiction")
                if jurisdiction is None:
                    continue
                breakdown.append({
                    "jurisdiction": {
                        "level": _field(jurisdiction, "level"),
                        "display_name": _field(jurisdiction, "display_name"),
                        "state": _field(jurisdiction, "state")
                    },
                    "amount": _field(entry, "amount", 0)
                })

        for entry in _field(calculation, "tax_breakdown") or []:
            jurisdiction = _field(entry, "jurisdiction")
            if jurisdiction is not None:
                breakdown.append({
                    "jurisdiction": {
                        "level": _field(jurisdiction, "level"),
                        "display_name": _field(jurisdiction, "display_name"),
                        "name": _field(jurisdiction, "name"),
                        "state": _field(jurisdiction, "state")
                    },
                    "amount": _field(entry, "amount", 0)
                })

        return {
            "tax_amount_exclusive": int(_field(calculation, "tax_amount_exclusive", 0) or 0),
            "tax_breakdown": breakdown
        }


def create_tax_oracle(config: Dict[str, Any] = None, logger: StructuredLogger = None) -> TaxOracle:
    """Pick Stripe Tax when USE_REAL_STRIPE=true, otherwise the flat-rate mock"""
    config = config or {}
    use_real_stripe = os.getenv("USE_REAL_STRIPE", "false").lower() == "true"

    if use_real_stripe:
        return StripeTaxOracle(
            timeout_seconds=float(config.get("tax_oracle_timeout_seconds", 8.0)),
            logger=logger
        )

    mock_config = config.get("mock_tax", {})
    return MockTaxOracle(
        rate_pct=mock_config.get("rate_pct", 0.0),
        jurisdictions=mock_config.get("jurisdictions", [])
    )
