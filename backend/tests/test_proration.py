from types import SimpleNamespace

import pytest

from cashdesk.errors import UnpricedLineError
from cashdesk.services.proration import (
    StoredTotalsStrategy,
    TaxRateSplitStrategy,
    UnitPriceStrategy,
    prorate_line,
    round_cents,
    select_strategy,
)


def line(**kwargs):
    fields = {
        "position": 0,
        "name": "Line",
        "quantity": 1,
        "unit_price_cents": None,
        "tax_rate_bps": None,
        "total_ht_cents": None,
        "total_tva_cents": None,
        "total_ttc_cents": None,
    }
    fields.update(kwargs)
    return SimpleNamespace(**fields)


class TestRounding:
    def test_half_up(self):
        assert round_cents(0) == 0
        assert round_cents("2.5") == 3
        assert round_cents("2.4999") == 2
        assert round_cents("1233.3333") == 1233


class TestStrategySelection:
    def test_stored_totals_first(self):
        item = line(unit_price_cents=1000, tax_rate_bps=2000, total_ht_cents=2000, total_ttc_cents=2400)
        assert isinstance(select_strategy(item), StoredTotalsStrategy)

    def test_unit_price_when_no_totals(self):
        item = line(unit_price_cents=1000, tax_rate_bps=2000)
        assert isinstance(select_strategy(item), UnitPriceStrategy)

    def test_tax_rate_split_when_only_ttc_and_rate(self):
        item = line(total_ttc_cents=1200, tax_rate_bps=2000)
        assert isinstance(select_strategy(item), TaxRateSplitStrategy)

    def test_bare_ttc_uses_stored_totals(self):
        item = line(quantity=3, total_ttc_cents=3000)
        assert isinstance(select_strategy(item), StoredTotalsStrategy)

    def test_unpriced_line(self):
        with pytest.raises(UnpricedLineError):
            prorate_line(line(quantity=2), 1)


class TestStoredTotals:
    def test_scenario_c_two_of_three(self):
        item = line(quantity=3, total_ht_cents=3000, total_tva_cents=600, total_ttc_cents=3600)

        amounts = prorate_line(item, 2)

        assert amounts.total_ttc_cents == 2400
        assert amounts.total_ht_cents == 2000
        assert amounts.total_tva_cents == 400
        assert amounts.strategy == "stored_totals"

    def test_cumulative_rounding_sums_to_line_total(self):
        item = line(quantity=3, total_ht_cents=833, total_tva_cents=167, total_ttc_cents=1000)

        parts = [prorate_line(item, 1, already_refunded=done) for done in range(3)]

        assert sum(p.total_ttc_cents for p in parts) == 1000
        assert sum(p.total_ht_cents for p in parts) == 833
        assert [p.total_ttc_cents for p in parts] == [333, 334, 333]

    def test_ht_derived_from_tva(self):
        item = line(quantity=2, total_tva_cents=200, total_ttc_cents=1200)
        amounts = prorate_line(item, 1)
        assert (amounts.total_ht_cents, amounts.total_tva_cents, amounts.total_ttc_cents) == (500, 100, 600)

    def test_bare_ttc_is_untaxed(self):
        item = line(quantity=3, total_ttc_cents=3000)

        amounts = prorate_line(item, 1)

        assert (amounts.total_ht_cents, amounts.total_tva_cents, amounts.total_ttc_cents) == (1000, 0, 1000)
        assert amounts.strategy == "stored_totals"

    def test_zero_quantity_counts_as_one(self):
        item = line(quantity=0, total_ht_cents=1000, total_ttc_cents=1200)
        assert prorate_line(item, 1).total_ttc_cents == 1200


class TestUnitPrice:
    def test_applies_tax_rate(self):
        item = line(quantity=4, unit_price_cents=999, tax_rate_bps=2000)

        amounts = prorate_line(item, 2)

        assert amounts.total_ht_cents == 1998
        assert amounts.total_ttc_cents == round_cents("2397.6")
        assert amounts.total_tva_cents == amounts.total_ttc_cents - amounts.total_ht_cents

    def test_missing_rate_means_no_tax(self):
        amounts = prorate_line(line(quantity=2, unit_price_cents=500), 1)
        assert (amounts.total_ht_cents, amounts.total_tva_cents, amounts.total_ttc_cents) == (500, 0, 500)

    def test_steps_sum_to_full_line(self):
        item = line(quantity=3, unit_price_cents=333, tax_rate_bps=550)
        full = prorate_line(item, 3)
        steps = [prorate_line(item, 1, already_refunded=done) for done in range(3)]
        assert sum(s.total_ttc_cents for s in steps) == full.total_ttc_cents


class TestTaxRateSplit:
    def test_derives_ht_from_rate(self):
        item = line(quantity=1, total_ttc_cents=1200, tax_rate_bps=2000)

        amounts = prorate_line(item, 1)

        assert amounts.total_ht_cents == 1000
        assert amounts.total_tva_cents == 200
        assert amounts.strategy == "tax_rate_split"

    def test_partial_quantity(self):
        item = line(quantity=3, total_ttc_cents=1000, tax_rate_bps=2000)

        first = prorate_line(item, 1)
        rest = prorate_line(item, 2, already_refunded=1)

        assert first.total_ttc_cents + rest.total_ttc_cents == 1000
        assert first.total_ht_cents + rest.total_ht_cents == round_cents("833.3333")
