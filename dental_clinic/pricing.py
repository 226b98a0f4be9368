"""
Treatment pricing.

A treatment type carries a list of price variants. A variant either applies
to an explicit set of teeth or is the default (fallback) price of the type.
The functions here are pure: they take plain data and return Decimals.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


class PriceResolutionError(ValueError):
    pass


class NoPriceRuleError(PriceResolutionError):
    """No variant matches the tooth and the type has no default variant."""

    def __init__(self, tooth: int):
        super().__init__(f"No price rule for tooth {tooth} and no default price configured.")
        self.tooth = tooth


def to_money(value: Any) -> Decimal:
    """Decimal rounded to cents. Accepts int, float, str, Decimal."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceVariant:
    name: str
    price: Decimal
    tooth_numbers: frozenset[int] = field(default_factory=frozenset)
    is_default: bool = False
    currency: str = "USD"

    def applies_to(self, tooth: int) -> bool:
        return tooth in self.tooth_numbers

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PriceVariant":
        # accepts both the stored snake_case shape and camelCase payloads
        teeth = data.get("tooth_numbers", data.get("toothNumbers")) or []
        return cls(
            name=str(data.get("name") or "Default"),
            price=to_money(data.get("price", 0)),
            tooth_numbers=frozenset(int(t) for t in teeth),
            is_default=bool(data.get("is_default", data.get("isDefault", False))),
            currency=str(data.get("currency") or "USD"),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "price": str(self.price),
            "currency": self.currency,
            "tooth_numbers": sorted(self.tooth_numbers),
            "is_default": self.is_default,
        }


def load_variants(raw: Iterable[Mapping[str, Any] | PriceVariant] | None) -> list[PriceVariant]:
    out = [v if isinstance(v, PriceVariant) else PriceVariant.from_dict(v) for v in (raw or [])]
    return _promote_single_variant(out)


def _promote_single_variant(variants: list[PriceVariant]) -> list[PriceVariant]:
    # a lone variant without teeth is the type's price for every tooth
    if len(variants) == 1 and not variants[0].tooth_numbers and not variants[0].is_default:
        v = variants[0]
        return [PriceVariant(v.name, v.price, v.tooth_numbers, True, v.currency)]
    return variants


def validate_variants(variants: Sequence[PriceVariant]) -> list[PriceVariant]:
    """
    Configuration-time checks for a treatment type:
    - at least one variant, no negative price
    - at most one default variant
    - a variant without teeth must be the default
    A single variant without teeth is promoted to default.
    Overlapping tooth sets are allowed: first match wins at resolution time.
    """
    if not variants:
        raise ValueError("A treatment type needs at least one price variant.")

    out = _promote_single_variant(list(variants))

    defaults = [v for v in out if v.is_default]
    if len(defaults) > 1:
        raise ValueError("Only one price variant can be the default.")

    for v in out:
        if v.price < ZERO:
            raise ValueError(f"Price of variant '{v.name}' cannot be negative.")
        if not v.tooth_numbers and not v.is_default:
            raise ValueError(f"Variant '{v.name}' has no teeth: only the default variant may have none.")
        if v.is_default and v.tooth_numbers:
            raise ValueError(f"Default variant '{v.name}' cannot be restricted to teeth.")

    return out


def overlapping_teeth(variants: Sequence[PriceVariant]) -> dict[int, list[str]]:
    """Teeth claimed by more than one non-default variant (tooth -> variant names)."""
    claims: dict[int, list[str]] = {}
    for v in variants:
        for t in v.tooth_numbers:
            claims.setdefault(t, []).append(v.name)
    return {t: names for t, names in sorted(claims.items()) if len(names) > 1}


def resolve_tooth_price(variants: Sequence[PriceVariant], tooth: int) -> Decimal:
    for v in variants:
        if v.applies_to(tooth):
            return v.price
    for v in variants:
        if v.is_default:
            return v.price
    raise NoPriceRuleError(tooth)


def price_for_tooth(variants: Sequence[PriceVariant], tooth: int) -> Decimal:
    """Tolerant form of resolve_tooth_price: a misconfigured type prices at 0."""
    try:
        return resolve_tooth_price(variants, tooth)
    except NoPriceRuleError:
        return ZERO


def total_price(variants: Sequence[PriceVariant], teeth: Iterable[int], strict: bool = False) -> Decimal:
    resolve = resolve_tooth_price if strict else price_for_tooth
    return sum((resolve(variants, t) for t in teeth), ZERO)


def price_range(variants: Sequence[PriceVariant]) -> tuple[Decimal, Decimal] | None:
    if not variants:
        return None
    prices = [v.price for v in variants]
    return min(prices), max(prices)


# =========================
# Discounts
# =========================
def discount_amount_from_percent(total: Decimal, percent: Any) -> Decimal:
    """Percentages above 100 are clamped to the total, negative ones rejected."""
    try:
        pct = percent if isinstance(percent, Decimal) else Decimal(str(percent))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid discount percentage: {percent!r}") from e
    if not pct.is_finite() or pct < ZERO:
        raise ValueError("Discount percentage cannot be negative.")
    return clamp_discount(total, to_money(total * pct / HUNDRED))


def discount_percent_from_amount(total: Decimal, amount: Any) -> Decimal:
    if total <= ZERO:
        return ZERO
    amt = min(max(to_money(amount), ZERO), total)
    return (amt * HUNDRED / total).quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_discount(total: Decimal, discount: Decimal) -> Decimal:
    if discount < ZERO:
        raise ValueError("Discount cannot be negative.")
    return min(discount, total)


def amount_due(total: Decimal, discount: Decimal) -> Decimal:
    return max(ZERO, total - discount)


@dataclass(frozen=True)
class TreatmentQuote:
    total_price: Decimal
    discount: Decimal
    discount_percent: Decimal
    amount_due: Decimal
    tooth_prices: tuple[tuple[int, Decimal], ...] = ()

    @property
    def payable(self) -> bool:
        # a free type (check-up) is still recordable; only an empty selection is not
        return bool(self.tooth_prices)

    def to_dict(self) -> dict:
        return {
            "total_price": str(self.total_price),
            "discount": str(self.discount),
            "discount_percent": str(self.discount_percent),
            "amount_due": str(self.amount_due),
            "tooth_prices": [{"tooth": t, "price": str(p)} for t, p in self.tooth_prices],
            "payable": self.payable,
        }


def quote_treatment(
    variants: Sequence[PriceVariant],
    teeth: Sequence[int],
    discount_amount: Any = None,
    discount_percent: Any = None,
    strict: bool = False,
) -> TreatmentQuote:
    """
    Total for a multi-tooth treatment, then the discount.
    The discount is given either as an absolute amount or as a percentage of the
    total (not both); it is clamped to the total so the amount due floors at 0.
    """
    if discount_amount is not None and discount_percent is not None:
        raise ValueError("Give the discount either as an amount or as a percentage, not both.")

    resolve = resolve_tooth_price if strict else price_for_tooth
    tooth_prices = tuple((t, resolve(variants, t)) for t in teeth)
    total = sum((p for _, p in tooth_prices), ZERO)

    if discount_percent is not None:
        discount = discount_amount_from_percent(total, discount_percent)
    elif discount_amount is not None:
        discount = clamp_discount(total, to_money(discount_amount))
    else:
        discount = ZERO

    return TreatmentQuote(
        total_price=total,
        discount=discount,
        discount_percent=discount_percent_from_amount(total, discount),
        amount_due=amount_due(total, discount),
        tooth_prices=tooth_prices,
    )
