from __future__ import annotations

from dataclasses import dataclass, field
import logging
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Protocol

from cashbook.errors import InvalidRate, NoConversionPath
from cashbook.money import ZERO, coerce_amount, normalize_currency

logger = logging.getLogger(__name__)

STATIC_BASE_CURRENCY = "SSP"

# Operator defaults used when an owner has not stored a rate for a leg.
STATIC_RATES: dict[tuple[str, str], Decimal] = {
    ("USD", "SSP"): Decimal("6000"),
    ("KES", "SSP"): Decimal("46.5"),
}


def validate_rate(value: Decimal | int | float | str) -> Decimal:
    try:
        rate = coerce_amount(value)
    except ValueError as exc:
        raise InvalidRate(f"Invalid FX rate: {value!r}") from exc
    if rate <= ZERO:
        raise InvalidRate("FX rate must be greater than zero.")
    return rate


def _normalize_rates(
    rates: Mapping[tuple[str, str], Decimal | int | float | str],
) -> dict[tuple[str, str], Decimal]:
    normalized: dict[tuple[str, str], Decimal] = {}
    for (base, target), rate in rates.items():
        normalized[(normalize_currency(base), normalize_currency(target))] = validate_rate(rate)
    return normalized


@dataclass(frozen=True)
class FxRate:
    base: str
    target: str
    rate: Decimal
    owner_id: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "base", normalize_currency(self.base))
        object.__setattr__(self, "target", normalize_currency(self.target))
        object.__setattr__(self, "rate", validate_rate(self.rate))
        if self.base == self.target:
            raise InvalidRate("FX rate base and target must differ.")


class RateResolver(Protocol):
    base_currency: str

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal | None: ...


@dataclass(frozen=True)
class StaticRateResolver:
    """Built-in operator constants, expressed against SSP."""

    rates: Mapping[tuple[str, str], Decimal] = None
    base_currency: str = STATIC_BASE_CURRENCY

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", _normalize_rates(self.rates or STATIC_RATES))
        object.__setattr__(self, "base_currency", normalize_currency(self.base_currency))

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal | None:
        return self.rates.get((source_currency, target_currency))


@dataclass(frozen=True)
class StoredRateResolver:
    """Per-owner rate table with the static constants as the last resort."""

    rates: Mapping[tuple[str, str], Decimal] = field(default_factory=dict)
    base_currency: str = STATIC_BASE_CURRENCY
    fallback: Optional[StaticRateResolver] = field(default_factory=StaticRateResolver)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", _normalize_rates(self.rates))
        object.__setattr__(self, "base_currency", normalize_currency(self.base_currency))

    @classmethod
    def from_rates(
        cls,
        rows: Iterable[FxRate],
        base_currency: str = STATIC_BASE_CURRENCY,
        fallback: Optional[StaticRateResolver] = None,
    ) -> "StoredRateResolver":
        # Later rows replace earlier ones for the same pair.
        table = {(row.base, row.target): row.rate for row in rows}
        return cls(
            rates=table,
            base_currency=base_currency,
            fallback=fallback if fallback is not None else StaticRateResolver(),
        )

    @classmethod
    def from_base_pair(
        cls,
        usd_to_base: Decimal | int | float | str,
        kes_to_base: Decimal | int | float | str,
        base_currency: str = STATIC_BASE_CURRENCY,
    ) -> "StoredRateResolver":
        base = normalize_currency(base_currency)
        return cls(
            rates={("USD", base): usd_to_base, ("KES", base): kes_to_base},
            base_currency=base,
        )

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal | None:
        return self.rates.get((source_currency, target_currency))


@dataclass(frozen=True)
class _LayeredResolver:
    primary: RateResolver
    fallback: StaticRateResolver

    @property
    def base_currency(self) -> str:
        return self.fallback.base_currency

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal | None:
        rate = self.primary.get_rate(source_currency, target_currency)
        if rate is None:
            rate = self.fallback.get_rate(source_currency, target_currency)
        return rate


@dataclass(frozen=True)
class ConversionResult:
    amount: Decimal
    source_currency: str
    target_currency: str
    path: str
    approximate: bool = False

    @property
    def warning(self) -> NoConversionPath | None:
        if not self.approximate:
            return None
        return NoConversionPath(self.source_currency, self.target_currency)


def convert(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_resolver: RateResolver | None = None,
) -> ConversionResult:
    """Convert ``amount`` between currencies.

    Lookup order is direct pair, inverse pair, triangulation through the
    resolver's base currency, then the static constants. When nothing
    resolves, the original amount comes back flagged ``approximate``.
    """
    resolver = rate_resolver or StaticRateResolver()
    source = normalize_currency(source_currency)
    target = normalize_currency(target_currency)
    coerced_amount = coerce_amount(amount)

    if source == target:
        return ConversionResult(coerced_amount, source, target, path="identity")

    converted = _convert_with(resolver, coerced_amount, source, target)
    if converted is not None:
        value, path = converted
        return ConversionResult(value, source, target, path=path)

    fallback = getattr(resolver, "fallback", None)
    if fallback is not None:
        layered = _LayeredResolver(primary=resolver, fallback=fallback)
        converted = _convert_with(layered, coerced_amount, source, target)
        if converted is not None:
            return ConversionResult(converted[0], source, target, path="static")

    logger.warning(
        "no fx path from %s to %s; returning amount unconverted", source, target
    )
    return ConversionResult(coerced_amount, source, target, path="none", approximate=True)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_resolver: RateResolver | None = None,
) -> Decimal:
    return convert(amount, source_currency, target_currency, rate_resolver).amount


def _convert_with(
    resolver: RateResolver, amount: Decimal, source: str, target: str
) -> tuple[Decimal, str] | None:
    direct = resolver.get_rate(source, target)
    if direct is not None:
        return amount * direct, "direct"
    inverse = resolver.get_rate(target, source)
    if inverse is not None:
        return amount / inverse, "inverse"

    base = resolver.base_currency
    in_base = _apply_leg(resolver, amount, source, base)
    if in_base is None:
        return None
    in_target = _apply_leg(resolver, in_base, base, target)
    if in_target is None:
        return None
    return in_target, "triangulated"


def _apply_leg(
    resolver: RateResolver, amount: Decimal, source: str, target: str
) -> Decimal | None:
    if source == target:
        return amount
    rate = resolver.get_rate(source, target)
    if rate is not None:
        return amount * rate
    rate = resolver.get_rate(target, source)
    if rate is not None:
        return amount / rate
    return None
