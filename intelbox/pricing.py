"""Heuristic pricing-table parser.

Two passes run over the same text and their rows are merged:

1. a *table pass* over blank-line separated blocks whose first two lines
   look like a pricing header ("plan", "price", "monthly", ...), and
2. a *line pass* for ``Plan Name - $X/mo`` style lines anywhere in the text.

Rows are de-duplicated on ``(plan, monthly, annual, fee)`` afterwards.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

CURRENCY_CODES = {"$": "USD", "€": "EUR", "£": "GBP"}

MONEY_RE = re.compile(
    r"(?P<symbol>[$€£])\s?(?P<amount>\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d{1,5}(?:[.,]\d{1,2})?)"
)
FEE_RE = re.compile(r"(\d{1,2}(?:\.\d{1,2})?)\s?%")
_DISCOUNT_RE = re.compile(r"\b(save|off|discount)\b", re.I)

_HEADER_HINT = re.compile(r"plan|price|monthly|annual|billed", re.I)
_PLAN_LINE = re.compile(r"([A-Z][A-Za-z0-9+ ]{2,40})\s+[-–—:]\s+([^\n]{0,60})")

_CADENCE_MONTHLY = re.compile(r"\s*(?:/\s*|per\s+|a\s+)(?:mo\b|mos\b|month|mth)", re.I)
_CADENCE_ANNUAL = re.compile(r"\s*(?:/\s*|per\s+|a\s+)(?:y\b|yr\b|year|annum)", re.I)
_LINE_MONTHLY = re.compile(r"/\s*mo|per\s*month|monthly", re.I)
_LINE_ANNUAL = re.compile(r"/\s*y(?:ea)?r?\b|per\s*year|annual(?:ly)?|yearly", re.I)

MAX_PLAN_NAME = 60


@dataclass
class PricingRow:
    plan_name: str
    price_monthly: float | None = None
    price_annual: float | None = None
    transaction_fee: float | None = None
    currency: str = "USD"

    @property
    def key(self) -> tuple:
        return (self.plan_name.lower(), self.price_monthly, self.price_annual, self.transaction_fee)


def parse_amount(raw: str) -> float | None:
    if re.fullmatch(r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?", raw):
        raw = raw.replace(",", "")
    else:
        raw = raw.replace(",", ".")
    try:
        return float(raw)
    except ValueError:
        return None


def parse_price_segment(plan_name: str, segment: str) -> PricingRow | None:
    """Build a row from the priced part of a line, or ``None`` if it has no price."""
    monthly: float | None = None
    annual: float | None = None
    unlabelled: list[float] = []
    currency: str | None = None

    for m in MONEY_RE.finditer(segment):
        amount = parse_amount(m.group("amount"))
        if amount is None:
            continue
        currency = currency or CURRENCY_CODES[m.group("symbol")]
        after = segment[m.end():m.end() + 24]
        if _CADENCE_MONTHLY.match(after):
            if monthly is None:
                monthly = amount
        elif _CADENCE_ANNUAL.match(after):
            if annual is None:
                annual = amount
        else:
            unlabelled.append(amount)

    if currency is None:
        return None

    for amount in unlabelled:
        if annual is None and _LINE_ANNUAL.search(segment) and not _LINE_MONTHLY.search(segment):
            annual = amount
        elif monthly is None:
            monthly = amount
        elif annual is None and _LINE_ANNUAL.search(segment):
            annual = amount

    if annual is not None and monthly is None:
        monthly = round(annual / 12, 2)

    fee: float | None = None
    if not _DISCOUNT_RE.search(segment):
        fee_match = FEE_RE.search(segment)
        if fee_match:
            fee = float(fee_match.group(1))

    return PricingRow(
        plan_name=plan_name,
        price_monthly=monthly,
        price_annual=annual,
        transaction_fee=fee,
        currency=currency,
    )


def _clean_plan_name(value: str) -> str:
    return re.sub(r"[\s:\-–—|]+$", "", value).strip()


def _table_rows(raw: str) -> list[PricingRow]:
    rows: list[PricingRow] = []
    for block in re.split(r"\n\s*\n", raw):
        lines = [line.strip() for line in block.splitlines() if line.strip()]
        if len(lines) < 2:
            continue
        if not _HEADER_HINT.search(lines[0] + " " + lines[1]):
            continue
        for i, line in enumerate(lines):
            money = MONEY_RE.search(line)
            if not money:
                continue
            plan = _clean_plan_name(line[:money.start()])
            if not plan and i > 0 and not MONEY_RE.search(lines[i - 1]):
                plan = _clean_plan_name(lines[i - 1])
            if not plan or len(plan) > MAX_PLAN_NAME:
                continue
            row = parse_price_segment(plan, line[money.start():])
            if row is not None:
                rows.append(row)
    return rows


def _line_rows(raw: str) -> list[PricingRow]:
    rows: list[PricingRow] = []
    for m in _PLAN_LINE.finditer(raw):
        row = parse_price_segment(m.group(1).strip(), m.group(2))
        if row is not None:
            rows.append(row)
    return rows


def extract_pricing(raw: str) -> list[PricingRow]:
    seen: set[tuple] = set()
    out: list[PricingRow] = []
    for row in _table_rows(raw) + _line_rows(raw):
        if row.key in seen:
            continue
        seen.add(row.key)
        out.append(row)
    return out
