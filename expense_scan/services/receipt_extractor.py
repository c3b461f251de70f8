"""Rule-based extraction of amount, merchant, date and currency from receipt OCR text.

Everything here is pure and bounded: input is capped at MAX_TEXT_LENGTH characters and
every pattern uses fixed repetition bounds, so hostile text (thousands of repeated
separators, giant numbers) cannot make matching blow up.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 10_000
MAX_MERCHANT_NAME_LENGTH = 200
MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("999999.99")
MIN_YEAR = 1900
MAX_YEAR = 2100

_CENTS = Decimal("0.01")


class ParsedReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Optional[Decimal] = None
    merchant: Optional[str] = None
    date: datetime
    date_detected: bool = False
    currency: Optional[str] = None
    currency_confidence: float = 0.0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    raw_text: str = ""
    error: Optional[str] = None


# ---- amounts ----

# Keyword priority for the receipt total. TOTAL must not fire inside SUBTOTAL.
AMOUNT_KEYWORDS: list[tuple[str, re.Pattern]] = [
    ("GRAND TOTAL", re.compile(r"\bGRAND\s{1,3}TOTAL\b", re.I)),
    ("TOTAL", re.compile(r"(?<![A-Za-z])(?<!SUB\s)(?<!SUB-)TOTAL(?:\s{1,3}DUE)?\b", re.I)),
    ("AMOUNT DUE", re.compile(r"\bAMOUNT\s{1,3}(?:DUE|PAID)\b", re.I)),
    ("BALANCE", re.compile(r"\bBALANCE(?:\s{1,3}DUE)?\b", re.I)),
    ("SUBTOTAL", re.compile(r"\bSUB[\s-]{0,2}TOTAL\b", re.I)),
]

_CURRENCY_TOKEN = r"(?:R\$|S/|MX\$|COL\$|US\$|[$€£¥]|\b(?:USD|EUR|GBP|BRL|PEN|CNY|MXN|COP)\b)"

# 1-7 leading digits, up to three thousands groups, optional 1-2 digit decimal part.
AMOUNT_NUMBER = re.compile(r"(?<![\d.,])(\d{1,7}(?:[.,]\d{3}){0,3}(?:[.,]\d{1,2})?)(?!\d|[.,]\d)")

_CURRENCY_BEFORE = re.compile(_CURRENCY_TOKEN + r"\s{0,3}$")
_CURRENCY_AFTER = re.compile(r"^\s{0,3}" + _CURRENCY_TOKEN)
_MINUS_BEFORE = re.compile(r"[-−–]\s{0,2}" + _CURRENCY_TOKEN + r"?\s{0,3}$")
_MINUS_AFTER = re.compile(r"^[-−–]")
_HAS_DECIMALS = re.compile(r"[.,]\d{1,2}$")


def parse_amount_string(amount_str: str | None) -> Optional[Decimal]:
    """Normalize `1,234.56` / `1.234,56` / `123,45` / `1,234` style strings to a Decimal.

    The last separator decides: when both separators appear, whichever comes last is the
    decimal point; a lone separator kind followed by at most two digits is decimal, anything
    else is thousands grouping.
    """
    if not amount_str:
        return None

    cleaned = re.sub(r"[^\d.,]", "", amount_str)
    if not cleaned or not any(c.isdigit() for c in cleaned):
        return None

    last_comma = cleaned.rfind(",")
    last_period = cleaned.rfind(".")

    if last_comma != -1 and last_period != -1:
        if last_comma > last_period:
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif last_comma != -1 or last_period != -1:
        sep = "," if last_comma != -1 else "."
        head, _, tail = cleaned.rpartition(sep)
        if cleaned.count(sep) == 1 and 0 < len(tail) <= 2:
            cleaned = f"{head}.{tail}"
        else:
            cleaned = cleaned.replace(sep, "")

    try:
        return Decimal(cleaned).quantize(_CENTS)
    except InvalidOperation:
        return None


def _in_range(amount: Optional[Decimal]) -> bool:
    return amount is not None and MIN_AMOUNT <= amount <= MAX_AMOUNT


@dataclass(frozen=True)
class _AmountCandidate:
    value: Decimal
    negative: bool
    currency_marked: bool
    has_decimals: bool


def _amount_candidates(segment: str) -> list[_AmountCandidate]:
    out: list[_AmountCandidate] = []
    for m in AMOUNT_NUMBER.finditer(segment):
        before = segment[max(0, m.start() - 8):m.start()]
        after = segment[m.end():m.end() + 5]
        value = parse_amount_string(m.group(1))
        if value is None:
            continue
        out.append(
            _AmountCandidate(
                value=value,
                negative=bool(_MINUS_BEFORE.search(before) or _MINUS_AFTER.match(after)),
                currency_marked=bool(_CURRENCY_BEFORE.search(before) or _CURRENCY_AFTER.match(after)),
                has_decimals=bool(_HAS_DECIMALS.search(m.group(1))),
            )
        )
    return out


# The total must follow its keyword directly, so "TOTAL ITEMS 3" is not a total.
_KEYWORD_VALUE = re.compile(
    r"^[\s:=*]{0,6}" + _CURRENCY_TOKEN + r"?\s{0,3}"
    r"(\d{1,7}(?:[.,]\d{3}){0,3}(?:[.,]\d{1,2})?)(?!\d|[.,]\d)"
)


def _keyword_value(segment: str) -> Optional[Decimal]:
    m = _KEYWORD_VALUE.match(segment)
    if not m or _MINUS_AFTER.match(segment[m.end():]):
        return None
    value = parse_amount_string(m.group(1))
    return value if _in_range(value) else None


def _find_keyword_amount(lines: list[str]) -> Optional[Decimal]:
    for _, pattern in AMOUNT_KEYWORDS:
        for i, line in enumerate(lines):
            m = pattern.search(line)
            if not m:
                continue
            rest = line[m.end():]
            amount = _keyword_value(rest)
            if amount is None and not rest.strip(" :.-*\t") and i + 1 < len(lines):
                # "TOTAL" on its own line, value printed underneath
                amount = _keyword_value(lines[i + 1])
            if amount is not None:
                return amount
    return None


def _find_largest_amount(text: str) -> Optional[Decimal]:
    values = [
        c.value
        for c in _amount_candidates(text)
        if not c.negative and (c.currency_marked or c.has_decimals) and _in_range(c.value)
    ]
    return max(values) if values else None


def _cap(text: str) -> str:
    if len(text) > MAX_TEXT_LENGTH:
        logger.warning("text too long (%s chars), truncating to %s", len(text), MAX_TEXT_LENGTH)
        return text[:MAX_TEXT_LENGTH]
    return text


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def extract_amount(text: str | None) -> Optional[Decimal]:
    amount, _ = _extract_amount_with_anchor(text)
    return amount


def _extract_amount_with_anchor(text: str | None) -> tuple[Optional[Decimal], bool]:
    if not text:
        return None, False
    text = _cap(text)
    amount = _find_keyword_amount(_lines(text))
    if amount is not None:
        return amount, True
    return _find_largest_amount(text), False


# ---- merchant ----

_DATE_LINE = re.compile(r"^\d{1,4}[/.\-]\d{1,2}[/.\-]\d{1,4}")
_TIME_LINE = re.compile(r"^\d{1,2}:\d{2}")
_STORE_NUMBER = re.compile(r"\s{0,3}(?:#|\bNo\.?\s{0,2}|\bStore\s{1,3}#?)\s{0,2}\d{1,10}\s{0,3}$", re.I)
_DECORATION = re.compile(r"^[\s*=~_\-.|+]{1,200}|[\s*=~_\-.|+]{1,200}$")
_EMOJI = re.compile("[\U0001F000-\U0001FAFF\u2600-\u27BF\uFE0F\u200D]")


def _strip_glyphs(line: str) -> str:
    line = _EMOJI.sub("", line)
    return "".join(
        ch for ch in line
        if not unicodedata.category(ch).startswith("C") and unicodedata.category(ch) != "So"
    )


def _should_skip_line(line: str) -> bool:
    if not line:
        return True
    if not any(ch.isalnum() for ch in line):
        return True
    if _DATE_LINE.match(line) or _TIME_LINE.match(line):
        return True
    letters = sum(1 for ch in line if ch.isalpha())
    digits = sum(1 for ch in line if ch.isdigit())
    if letters == 0:
        return True
    return digits > letters


def _clean_merchant_name(line: str) -> str:
    name = _DECORATION.sub("", line)
    name = _STORE_NUMBER.sub("", name)
    name = _DECORATION.sub("", name)
    name = re.sub(r"\s{2,}", " ", name).strip()
    return name[:MAX_MERCHANT_NAME_LENGTH]


def extract_merchant(text: str | None) -> Optional[str]:
    if not text:
        return None
    for raw in _cap(text).splitlines():
        line = _strip_glyphs(raw).strip()
        if _should_skip_line(line):
            continue
        name = _clean_merchant_name(line)
        if any(ch.isalpha() for ch in name):
            return name
    return None


# ---- dates ----

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH = r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"

_ISO_DATE = re.compile(r"(?<!\d)(\d{4})-(\d{1,2})-(\d{1,2})(?!\d)")
_US_DATE = re.compile(r"(?<![\d.])(\d{1,2})([/-])(\d{1,2})\2(\d{4}|\d{2})(?![\d/])")
_EU_DATE = re.compile(r"(?<![\d/])(\d{1,2})([.-])(\d{1,2})\2(\d{4})(?!\d)")
_MONTH_FIRST = re.compile(r"\b" + _MONTH + r"\.?\s{1,3}(\d{1,2})(?:st|nd|rd|th)?,?\s{1,3}(\d{4})(?!\d)", re.I)
_DAY_FIRST = re.compile(r"(?<!\d)(\d{1,2})(?:st|nd|rd|th)?\s{1,3}" + _MONTH + r"\.?,?\s{1,3}(\d{4})(?!\d)", re.I)


def _make_date(year: int, month: int, day: int) -> Optional[datetime]:
    if not MIN_YEAR <= year <= MAX_YEAR:
        return None
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def _iso(m: re.Match) -> Optional[datetime]:
    return _make_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))


def _us(m: re.Match) -> Optional[datetime]:
    month, day, year_s = int(m.group(1)), int(m.group(3)), m.group(4)
    year = 2000 + int(year_s) if len(year_s) == 2 else int(year_s)
    if month > 12 and day <= 12:
        month, day = day, month
    return _make_date(year, month, day)


def _eu(m: re.Match) -> Optional[datetime]:
    day, month, year = int(m.group(1)), int(m.group(3)), int(m.group(4))
    if month > 12 and day <= 12:
        month, day = day, month
    return _make_date(year, month, day)


def _month_first(m: re.Match) -> Optional[datetime]:
    return _make_date(int(m.group(3)), MONTHS[m.group(1)[:3].lower()], int(m.group(2)))


def _day_first(m: re.Match) -> Optional[datetime]:
    return _make_date(int(m.group(3)), MONTHS[m.group(2)[:3].lower()], int(m.group(1)))


DATE_PATTERNS: list[tuple[re.Pattern, Callable[[re.Match], Optional[datetime]]]] = [
    (_ISO_DATE, _iso),
    (_US_DATE, _us),
    (_EU_DATE, _eu),
    (_MONTH_FIRST, _month_first),
    (_DAY_FIRST, _day_first),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def find_date(text: str | None) -> Optional[datetime]:
    if not text:
        return None
    text = _cap(text)
    for pattern, build in DATE_PATTERNS:
        for m in pattern.finditer(text):
            parsed = build(m)
            if parsed is not None:
                return parsed
    return None


def extract_date(text: str | None, now: Callable[[], datetime] = _utcnow) -> datetime:
    """Return the receipt date, or the current time when none can be read."""
    return find_date(text) or now()


# ---- currency ----

@dataclass(frozen=True)
class CurrencyRule:
    code: str
    patterns: tuple[re.Pattern, ...]
    confidence: float


# Unique symbols first, the bare dollar sign last.
CURRENCY_RULES: list[CurrencyRule] = [
    CurrencyRule("EUR", (re.compile("€"), re.compile(r"\bEUR\b", re.I)), 0.95),
    CurrencyRule("GBP", (re.compile("£"), re.compile(r"\bGBP\b", re.I)), 0.95),
    CurrencyRule("BRL", (re.compile(r"R\$"), re.compile(r"\bBRL\b", re.I)), 0.90),
    CurrencyRule("PEN", (re.compile(r"S/"), re.compile(r"\bPEN\b", re.I), re.compile(r"\bSOL(?:ES)?\b", re.I)), 0.90),
    CurrencyRule("CNY", (re.compile("¥"), re.compile(r"\b(?:CNY|RMB|YUAN)\b", re.I)), 0.85),
    CurrencyRule("MXN", (re.compile(r"MX\$"), re.compile(r"\bMXN\b", re.I), re.compile(r"\bPESOS?\s{1,3}MEXICANOS?\b", re.I)), 0.85),
    CurrencyRule("COP", (re.compile(r"COL\$"), re.compile(r"\bCOP\b", re.I), re.compile(r"\bPESOS?\s{1,3}COLOMBIANOS?\b", re.I)), 0.85),
    CurrencyRule("USD", (re.compile(r"US\$"), re.compile(r"(?<![A-Z])\$"), re.compile(r"\bUSD\b", re.I)), 0.70),
]


def detect_currency(text: str | None) -> tuple[Optional[str], float]:
    if not text:
        return None, 0.0
    text = _cap(text)
    for rule in CURRENCY_RULES:
        if any(p.search(text) for p in rule.patterns):
            return rule.code, rule.confidence
    return None, 0.0


# ---- receipt ----

MERCHANT_WEIGHT = 0.33
AMOUNT_WEIGHT = 0.34
ANCHORED_TOTAL_WEIGHT = 0.20
CURRENCY_WEIGHT = 0.13


class ReceiptExtractor:
    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock

    def parse(self, raw_text: str | None) -> ParsedReceipt:
        if not raw_text or not raw_text.strip():
            return ParsedReceipt(
                date=self._clock(),
                raw_text=raw_text or "",
                error="No text extracted from receipt",
            )

        text = _cap(raw_text)

        merchant = extract_merchant(text)
        amount, anchored = _extract_amount_with_anchor(text)
        found_date = find_date(text)
        currency, currency_confidence = detect_currency(text)

        confidence = 0.0
        if merchant:
            confidence += MERCHANT_WEIGHT
        if amount is not None:
            confidence += AMOUNT_WEIGHT
            if anchored:
                confidence += ANCHORED_TOTAL_WEIGHT
        if currency:
            confidence += CURRENCY_WEIGHT

        parsed = ParsedReceipt(
            amount=amount,
            merchant=merchant,
            date=found_date or self._clock(),
            date_detected=found_date is not None,
            currency=currency,
            currency_confidence=currency_confidence,
            confidence=round(min(confidence, 1.0), 2),
            raw_text=text,
        )
        logger.debug(
            "parsed receipt merchant=%r amount=%s currency=%s date=%s confidence=%.2f",
            parsed.merchant, parsed.amount, parsed.currency, parsed.date.date(), parsed.confidence,
        )
        return parsed


def parse_receipt(raw_text: str | None) -> ParsedReceipt:
    return ReceiptExtractor().parse(raw_text)
