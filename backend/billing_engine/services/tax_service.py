"""
Tax calculation service.

WHAT: Computes the tax owed on an invoice amount for a jurisdiction.

WHY: Every invoice carries tax computed once at creation:
1. Amount, tax and total are frozen on the invoice
2. The total invariant (total = amount + tax) holds to the cent
3. Exempt subscribers are never charged tax

HOW: Flat rate per country from a static table. Decimal arithmetic with
ROUND_HALF_UP to cents. Unknown countries get a zero rate; that is the
documented behaviour rather than an error, so a missing table entry never
blocks billing.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from billing_engine.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Jurisdiction -> flat rate
TAX_RATES: Dict[str, Decimal] = {
    "US": Decimal("0.08"),
    "CA": Decimal("0.13"),
    "GB": Decimal("0.20"),
    "DE": Decimal("0.19"),
    "AE": Decimal("0.05"),
}

# Advisory federal share of the tax amount, the state gets the rest
FEDERAL_SHARE = Decimal("0.7")


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary value half-up to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value, field_name: str = "amount") -> Decimal:
    """
    Convert input to Decimal, rejecting floats' binary noise and garbage.

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValidationError(message=f"{field_name} must be a number", field=field_name)
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError(message=f"{field_name} must be a number", field=field_name)
    if not result.is_finite():
        raise ValidationError(message=f"{field_name} must be finite", field=field_name)
    return result


@dataclass
class TaxCalculation:
    """Result of a tax calculation."""

    tax_amount: Decimal
    tax_rate: Decimal
    total_amount: Decimal
    breakdown: Dict[str, Decimal] = field(default_factory=dict)


class TaxCalculator:
    """
    Flat-rate tax calculator.

    WHY: Constructor-injectable rate table so tests and future per-region
    overrides don't patch module globals.
    """

    def __init__(self, rates: Optional[Dict[str, Decimal]] = None):
        self.rates = dict(rates if rates is not None else TAX_RATES)

    def get_rate(self, country: Optional[str]) -> Decimal:
        """Rate for a country code; unknown or missing -> 0."""
        if not country:
            return Decimal("0")
        return self.rates.get(country.upper(), Decimal("0"))

    def calculate_tax(
        self,
        amount,
        currency: str,
        country: Optional[str],
        tax_exempt: bool = False,
    ) -> TaxCalculation:
        """
        Calculate tax for an amount.

        Args:
            amount: Pre-tax amount (must be positive)
            currency: ISO currency code (informational)
            country: ISO country code for the rate lookup
            tax_exempt: Skip tax entirely

        Returns:
            TaxCalculation with tax, rate, total and federal/state breakdown

        Raises:
            ValidationError: If amount is not positive
        """
        amount = quantize_money(to_decimal(amount))
        if amount <= 0:
            raise ValidationError(message="Amount must be positive", field="amount")

        if tax_exempt:
            return TaxCalculation(
                tax_amount=Decimal("0.00"),
                tax_rate=Decimal("0"),
                total_amount=amount,
                breakdown={},
            )

        rate = self.get_rate(country)
        if rate == 0 and country and country.upper() not in self.rates:
            logger.info(
                f"No tax rate configured for {country}, applying zero tax",
                extra={"country": country, "currency": currency},
            )

        tax_amount = quantize_money(amount * rate)
        federal = quantize_money(tax_amount * FEDERAL_SHARE)

        return TaxCalculation(
            tax_amount=tax_amount,
            tax_rate=rate,
            total_amount=amount + tax_amount,
            breakdown={
                "federal": federal,
                # Remainder so the parts always add up to the tax amount
                "state": tax_amount - federal,
            },
        )


_tax_calculator: Optional[TaxCalculator] = None


def get_tax_calculator() -> TaxCalculator:
    """Get or create the global tax calculator."""
    global _tax_calculator

    if _tax_calculator is None:
        _tax_calculator = TaxCalculator()

    return _tax_calculator
