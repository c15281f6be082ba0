# Overview: Line proration strategies used by the refund engine.

"""
Refund proration

Historical invoice lines come in different shapes: some carry their own
HT/TVA/TTC totals, some only a unit price and a tax rate, some a TTC total
and a rate. Each shape is handled by one small strategy; the engine asks
them in order and the first one that applies prices the refund.

Amounts are cumulative: refunding q units after r were already refunded
costs round(total * (r + q) / original) - round(total * r / original).
Refunding every unit in any number of steps therefore sums exactly to the
line total, with no cent lost or gained to rounding.

Rounding is half-up to the cent. TVA is always TTC - HT.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from ..errors import UnpricedLineError


BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class ProratedAmounts:
    total_ht_cents: int
    total_tva_cents: int
    total_ttc_cents: int
    strategy: str

    def to_dict(self) -> dict:
        return {
            "total_ht_cents": self.total_ht_cents,
            "total_tva_cents": self.total_tva_cents,
            "total_ttc_cents": self.total_ttc_cents,
            "strategy": self.strategy,
        }


def round_cents(value) -> int:
    """Half-up rounding of a Decimal (or int) amount to whole cents."""
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _original_quantity(item) -> int:
    # Legacy lines with no quantity count as one unit
    quantity = item.quantity or 0
    return quantity if quantity > 0 else 1


def _cumulative_share(total: int, original: int, done: int, quantity: int) -> int:
    before = round_cents(Decimal(total) * done / original)
    after = round_cents(Decimal(total) * (done + quantity) / original)
    return after - before


def _with_tax(ht_cents, tax_rate_bps: int) -> int:
    return round_cents(Decimal(ht_cents) * (BPS_DENOMINATOR + tax_rate_bps) / BPS_DENOMINATOR)


def _without_tax(ttc_cents, tax_rate_bps: int) -> int:
    return round_cents(Decimal(ttc_cents) * BPS_DENOMINATOR / (BPS_DENOMINATOR + tax_rate_bps))


class ProrationStrategy:
    name = "base"

    def applies(self, item) -> bool:
        raise NotImplementedError

    def prorate(self, item, quantity: int, already_refunded: int = 0) -> ProratedAmounts:
        raise NotImplementedError


class StoredTotalsStrategy(ProrationStrategy):
    """
    Line carries its own totals: ratio = requested / original quantity.

    HT comes from the stored HT, else TTC - TVA. A bare TTC total with no
    rate either is an untaxed line (HT = TTC). TTC plus a rate is left to
    TaxRateSplitStrategy.
    """

    name = "stored_totals"

    def applies(self, item) -> bool:
        if item.total_ttc_cents is None:
            return False
        return (
            item.total_ht_cents is not None
            or item.total_tva_cents is not None
            or item.tax_rate_bps is None
        )

    def prorate(self, item, quantity, already_refunded=0):
        original = _original_quantity(item)
        line_ttc = item.total_ttc_cents
        if item.total_ht_cents is not None:
            line_ht = item.total_ht_cents
        elif item.total_tva_cents is not None:
            line_ht = line_ttc - item.total_tva_cents
        else:
            line_ht = line_ttc

        ttc = _cumulative_share(line_ttc, original, already_refunded, quantity)
        ht = _cumulative_share(line_ht, original, already_refunded, quantity)
        return ProratedAmounts(ht, ttc - ht, ttc, self.name)


class UnitPriceStrategy(ProrationStrategy):
    """Unit price HT times quantity, tax rate applied (missing rate = 0)."""

    name = "unit_price"

    def applies(self, item) -> bool:
        return item.unit_price_cents is not None

    def prorate(self, item, quantity, already_refunded=0):
        rate = item.tax_rate_bps or 0
        unit = item.unit_price_cents
        ht = unit * quantity
        ttc = _with_tax(unit * (already_refunded + quantity), rate) - _with_tax(unit * already_refunded, rate)
        return ProratedAmounts(ht, ttc - ht, ttc, self.name)


class TaxRateSplitStrategy(ProrationStrategy):
    """Only TTC and a rate are stored: HT is derived from the rate."""

    name = "tax_rate_split"

    def applies(self, item) -> bool:
        return item.total_ttc_cents is not None and item.tax_rate_bps is not None

    def prorate(self, item, quantity, already_refunded=0):
        original = _original_quantity(item)
        rate = item.tax_rate_bps
        line_ttc = item.total_ttc_cents

        ttc_before = round_cents(Decimal(line_ttc) * already_refunded / original)
        ttc_after = round_cents(Decimal(line_ttc) * (already_refunded + quantity) / original)
        ttc = ttc_after - ttc_before
        ht = _without_tax(ttc_after, rate) - _without_tax(ttc_before, rate)
        return ProratedAmounts(ht, ttc - ht, ttc, self.name)


DEFAULT_STRATEGIES: tuple[ProrationStrategy, ...] = (
    StoredTotalsStrategy(),
    UnitPriceStrategy(),
    TaxRateSplitStrategy(),
)


def select_strategy(item, strategies=DEFAULT_STRATEGIES) -> ProrationStrategy | None:
    for strategy in strategies:
        if strategy.applies(item):
            return strategy
    return None


def prorate_line(
    item,
    quantity: int,
    already_refunded: int = 0,
    strategies=DEFAULT_STRATEGIES,
) -> ProratedAmounts:
    """
    Price the refund of ``quantity`` units of ``item``.

    Raises UnpricedLineError when no strategy can price the line.
    """
    strategy = select_strategy(item, strategies)
    if strategy is None:
        raise UnpricedLineError(
            "Invoice line carries no usable pricing",
            index=item.position,
            name=item.name,
        )
    return strategy.prorate(item, quantity, already_refunded)
