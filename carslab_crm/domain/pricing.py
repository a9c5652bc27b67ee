"""
Price and discount value objects used when invoicing detailing services.

``DiscountValueObject.apply_to`` is the single place where discounted prices
are computed. Amounts are ``Decimal`` with two decimal places, rounded
half-up, and a final price is never negative.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Union

SCALE = Decimal("0.01")
ZERO = Decimal("0.00")
ONE_HUNDRED = Decimal("100.00")

Number = Union[Decimal, int, str, float]


def _money(value: Number) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(SCALE, rounding=ROUND_HALF_UP)


class PriceType(str, Enum):
    NETTO = "NETTO"
    BRUTTO = "BRUTTO"


class DiscountType(str, Enum):
    PERCENT = "PERCENT"
    FIXED_AMOUNT_OFF_BRUTTO = "FIXED_AMOUNT_OFF_BRUTTO"
    FIXED_AMOUNT_OFF_NETTO = "FIXED_AMOUNT_OFF_NETTO"
    FIXED_FINAL_BRUTTO = "FIXED_FINAL_BRUTTO"
    FIXED_FINAL_NETTO = "FIXED_FINAL_NETTO"


@dataclass(frozen=True)
class PriceValueObject:
    price_netto: Decimal
    price_brutto: Decimal
    tax_amount: Decimal

    def __post_init__(self) -> None:
        if self.price_netto < ZERO:
            raise ValueError(f"Netto price cannot be negative: {self.price_netto}")
        if self.price_brutto < ZERO:
            raise ValueError(f"Brutto price cannot be negative: {self.price_brutto}")
        if self.tax_amount < ZERO:
            raise ValueError(f"Tax amount cannot be negative: {self.tax_amount}")
        if self.price_netto + self.tax_amount != self.price_brutto:
            raise ValueError(
                f"Price inconsistency: netto ({self.price_netto}) + VAT ({self.tax_amount}) "
                f"must equal brutto ({self.price_brutto})"
            )

    @classmethod
    def zero(cls) -> "PriceValueObject":
        return cls(ZERO, ZERO, ZERO)

    @classmethod
    def create_from_input(cls, input_value: Number, input_type: PriceType, vat_rate: int) -> "PriceValueObject":
        multiplier = Decimal(1) + (Decimal(vat_rate) / Decimal(100)).quantize(
            Decimal("0.0001"), rounding=ROUND_HALF_UP
        )
        value = _money(input_value)

        if PriceType(input_type) == PriceType.BRUTTO:
            price_brutto = value
            netto_precise = (price_brutto / multiplier).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
            tax_amount = (price_brutto - netto_precise).quantize(SCALE, rounding=ROUND_HALF_UP)
            price_netto = price_brutto - tax_amount
        else:
            price_netto = value
            price_brutto = (price_netto * multiplier).quantize(SCALE, rounding=ROUND_HALF_UP)
            tax_amount = price_brutto - price_netto

        return cls(price_netto=price_netto, price_brutto=price_brutto, tax_amount=tax_amount)

    def multiply(self, multiplier: Number) -> "PriceValueObject":
        factor = Decimal(str(multiplier)) if isinstance(multiplier, float) else Decimal(multiplier)
        netto = _money(self.price_netto * factor)
        brutto = _money(self.price_brutto * factor)
        return PriceValueObject(price_netto=netto, price_brutto=brutto, tax_amount=brutto - netto)

    def add(self, other: "PriceValueObject") -> "PriceValueObject":
        return PriceValueObject(
            price_netto=self.price_netto + other.price_netto,
            price_brutto=self.price_brutto + other.price_brutto,
            tax_amount=self.tax_amount + other.tax_amount,
        )

    def subtract(self, other: "PriceValueObject") -> "PriceValueObject":
        return PriceValueObject(
            price_netto=self.price_netto - other.price_netto,
            price_brutto=self.price_brutto - other.price_brutto,
            tax_amount=self.tax_amount - other.tax_amount,
        )

    def as_dict(self) -> dict[str, str]:
        return {
            "price_netto": str(self.price_netto),
            "price_brutto": str(self.price_brutto),
            "tax_amount": str(self.tax_amount),
        }


@dataclass(frozen=True)
class DiscountValueObject:
    type: DiscountType
    value: Decimal
    reason: str | None = None

    def __post_init__(self) -> None:
        normalized = _money(self.value)
        object.__setattr__(self, "type", DiscountType(self.type))
        object.__setattr__(self, "value", normalized)
        if normalized < ZERO:
            raise ValueError(f"Discount value cannot be negative: {self.value} for type {self.type.value}")
        if self.type == DiscountType.PERCENT and normalized > ONE_HUNDRED:
            raise ValueError(f"Percentage discount cannot exceed 100%: {self.value}")

    @classmethod
    def create_percent(cls, percentage: Number, reason: str | None = None) -> "DiscountValueObject":
        return cls(DiscountType.PERCENT, _money(percentage), reason)

    @classmethod
    def create_fixed_amount_off_brutto(cls, amount: Number, reason: str | None = None) -> "DiscountValueObject":
        return cls(DiscountType.FIXED_AMOUNT_OFF_BRUTTO, _money(amount), reason)

    @classmethod
    def create_fixed_amount_off_netto(cls, amount: Number, reason: str | None = None) -> "DiscountValueObject":
        return cls(DiscountType.FIXED_AMOUNT_OFF_NETTO, _money(amount), reason)

    @classmethod
    def create_fixed_final_brutto(cls, final_price: Number, reason: str | None = None) -> "DiscountValueObject":
        return cls(DiscountType.FIXED_FINAL_BRUTTO, _money(final_price), reason)

    @classmethod
    def create_fixed_final_netto(cls, final_price: Number, reason: str | None = None) -> "DiscountValueObject":
        return cls(DiscountType.FIXED_FINAL_NETTO, _money(final_price), reason)

    @classmethod
    def from_raw(cls, discount_type: DiscountType | str, value: Number) -> "DiscountValueObject":
        factories = {
            DiscountType.PERCENT: cls.create_percent,
            DiscountType.FIXED_AMOUNT_OFF_BRUTTO: cls.create_fixed_amount_off_brutto,
            DiscountType.FIXED_AMOUNT_OFF_NETTO: cls.create_fixed_amount_off_netto,
            DiscountType.FIXED_FINAL_BRUTTO: cls.create_fixed_final_brutto,
            DiscountType.FIXED_FINAL_NETTO: cls.create_fixed_final_netto,
        }
        return factories[DiscountType(discount_type)](value)

    def apply_to(self, base_price: PriceValueObject, vat_rate: int) -> PriceValueObject:
        if self.type == DiscountType.PERCENT and self.value == ZERO:
            return base_price
        if self.type == DiscountType.PERCENT:
            multiplier = ((ONE_HUNDRED - self.value) / ONE_HUNDRED).quantize(
                Decimal("0.0001"), rounding=ROUND_HALF_UP
            )
            discounted = _money(base_price.price_brutto * multiplier)
            return PriceValueObject.create_from_input(discounted, PriceType.BRUTTO, vat_rate)
        if self.type == DiscountType.FIXED_AMOUNT_OFF_BRUTTO:
            discounted = max(base_price.price_brutto - self.value, ZERO)
            return PriceValueObject.create_from_input(discounted, PriceType.BRUTTO, vat_rate)
        if self.type == DiscountType.FIXED_AMOUNT_OFF_NETTO:
            discounted = max(base_price.price_netto - self.value, ZERO)
            return PriceValueObject.create_from_input(discounted, PriceType.NETTO, vat_rate)
        if self.type == DiscountType.FIXED_FINAL_BRUTTO:
            return PriceValueObject.create_from_input(self.value, PriceType.BRUTTO, vat_rate)
        return PriceValueObject.create_from_input(self.value, PriceType.NETTO, vat_rate)

    def calculate_savings(self, base_price: PriceValueObject, vat_rate: int) -> PriceValueObject:
        final_price = self.apply_to(base_price, vat_rate)
        netto = base_price.price_netto - final_price.price_netto
        brutto = base_price.price_brutto - final_price.price_brutto
        tax = base_price.tax_amount - final_price.tax_amount
        if netto < ZERO or brutto < ZERO or tax < ZERO:
            # A fixed final price above the base price saves nothing.
            return PriceValueObject.zero()
        return PriceValueObject(price_netto=netto, price_brutto=brutto, tax_amount=tax)

    def can_be_applied_to(self, base_price: PriceValueObject) -> bool:
        if self.type == DiscountType.FIXED_AMOUNT_OFF_BRUTTO:
            return base_price.price_brutto >= self.value
        if self.type == DiscountType.FIXED_AMOUNT_OFF_NETTO:
            return base_price.price_netto >= self.value
        return True

    def description(self) -> str:
        labels = {
            DiscountType.PERCENT: f"{self.value}% discount",
            DiscountType.FIXED_AMOUNT_OFF_BRUTTO: f"{self.value} off gross price",
            DiscountType.FIXED_AMOUNT_OFF_NETTO: f"{self.value} off net price",
            DiscountType.FIXED_FINAL_BRUTTO: f"Final gross price: {self.value}",
            DiscountType.FIXED_FINAL_NETTO: f"Final net price: {self.value}",
        }
        text = labels[self.type]
        if self.reason:
            text = f"{text} ({self.reason})"
        return text
