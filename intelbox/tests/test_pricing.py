from __future__ import annotations

from intelbox.pricing import extract_pricing, parse_amount, parse_price_segment


class TestParseSegment:
    def test_annual_only_derives_monthly(self):
        row = parse_price_segment("Pro", "$240/year")
        assert row.price_annual == 240
        assert row.price_monthly == 20.00

    def test_monthly_and_annual(self):
        row = parse_price_segment("Team", "$49/mo or $490/yr")
        assert (row.price_monthly, row.price_annual) == (49, 490)

    def test_unlabelled_price_defaults_to_monthly(self):
        row = parse_price_segment("Starter", "$19")
        assert row.price_monthly == 19
        assert row.price_annual is None

    def test_unlabelled_price_on_annual_line(self):
        row = parse_price_segment("Business", "$1,200 billed annually")
        assert row.price_annual == 1200
        assert row.price_monthly == 100

    def test_transaction_fee(self):
        row = parse_price_segment("Payments", "$0/mo + 2.9% per transaction")
        assert row.transaction_fee == 2.9

    def test_discount_percent_is_not_a_fee(self):
        row = parse_price_segment("Pro", "$10/mo, save 20% yearly")
        assert row.transaction_fee is None

    def test_currency_from_symbol(self):
        assert parse_price_segment("Basic", "€15/month").currency == "EUR"
        assert parse_price_segment("Basic", "£15/month").currency == "GBP"

    def test_no_price(self):
        assert parse_price_segment("Enterprise", "Contact sales") is None


def test_parse_amount_formats():
    assert parse_amount("1,200") == 1200
    assert parse_amount("9,99") == 9.99
    assert parse_amount("12.50") == 12.5


class TestExtractPricing:
    def test_line_pass(self):
        rows = extract_pricing("Our plans:\nPro - $240/year\nStarter - $9/mo\n")
        by_plan = {r.plan_name: r for r in rows}
        assert by_plan["Pro"].price_monthly == 20.0
        assert by_plan["Starter"].price_monthly == 9

    def test_table_pass(self):
        text = "Plan Price\nBilled monthly\nBasic $10/mo\nPremium $30/mo\n\nFooter text"
        rows = extract_pricing(text)
        assert {(r.plan_name, r.price_monthly) for r in rows} == {("Basic", 10), ("Premium", 30)}

    def test_rows_are_deduplicated(self):
        text = "Plan Price\nmonthly\nGrowth - $99/mo\n"
        rows = extract_pricing(text)
        assert [(r.plan_name, r.price_monthly) for r in rows] == [("Growth", 99)]

    def test_no_prices(self):
        assert extract_pricing("We do not publish pricing.") == []
