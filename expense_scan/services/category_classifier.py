from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from rapidfuzz.distance import JaroWinkler

from expense_scan.core.config import settings

logger = logging.getLogger(__name__)

FUZZY_MATCH_THRESHOLD = 0.82
AGREEMENT_BONUS = 0.1
MAX_CONFIDENCE = 0.99


class SignalSource(str, Enum):
    EXACT_MERCHANT = "exact_merchant"
    FUZZY_MERCHANT = "fuzzy_merchant"
    KEYWORD = "keyword"
    GENERIC = "generic"
    AGGREGATE = "aggregate"


# lower index wins ties and names the prediction source
SOURCE_PRIORITY = [
    SignalSource.EXACT_MERCHANT,
    SignalSource.FUZZY_MERCHANT,
    SignalSource.KEYWORD,
    SignalSource.GENERIC,
]


class HistoryRecord(BaseModel):
    merchant: Optional[str] = None
    category: str
    amount: Optional[Decimal] = None


class CategoryAlternative(BaseModel):
    category: str
    confidence: float


class CategoryPrediction(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: SignalSource
    alternatives: list[CategoryAlternative] = Field(default_factory=list, max_length=3)
    below_threshold: bool = True


@dataclass(frozen=True)
class CategorySignal:
    category: str
    confidence: float
    source: SignalSource


def _norm(name: Optional[str]) -> str:
    return " ".join((name or "").lower().split())


# ---- scorers ----

def exact_merchant_signal(merchant: Optional[str], history: Sequence[HistoryRecord]) -> Optional[CategorySignal]:
    """Most frequent category recorded for this merchant.

    Confidence grows with how often the merchant was seen (capped at 10 visits) and with how
    consistently it was filed under the same category.
    """
    key = _norm(merchant)
    if not key or not history:
        return None

    counts = Counter(r.category for r in history if r.category and _norm(r.merchant) == key)
    if not counts:
        return None

    category, count = counts.most_common(1)[0]
    total = sum(counts.values())
    consistency = count / total
    frequency = min(total / 10, 1.0)
    score = consistency * 0.7 + frequency * 0.3
    confidence = min(0.9 + score * 0.1, MAX_CONFIDENCE)
    return CategorySignal(category, round(confidence, 3), SignalSource.EXACT_MERCHANT)


def fuzzy_merchant_signal(merchant: Optional[str], history: Sequence[HistoryRecord]) -> Optional[CategorySignal]:
    key = _norm(merchant)
    if not key or not history:
        return None

    candidates = {_norm(r.merchant) for r in history if r.merchant} - {key, ""}
    best, best_score = None, 0.0
    for candidate in sorted(candidates):
        score = JaroWinkler.normalized_similarity(key, candidate)
        if score > best_score:
            best, best_score = candidate, score

    if best is None or best_score < FUZZY_MATCH_THRESHOLD:
        return None

    matched = exact_merchant_signal(best, history)
    if matched is None:
        return None

    confidence = matched.confidence * best_score * 0.85
    return CategorySignal(matched.category, round(confidence, 3), SignalSource.FUZZY_MERCHANT)


DESCRIPTION_KEYWORDS: dict[str, list[str]] = {
    "groceries": ["grocery", "groceries", "produce", "vegetables", "fruits", "food", "milk", "eggs", "bread"],
    "food": ["coffee", "breakfast", "lunch", "dinner", "restaurant", "cafe", "burger", "pizza", "sushi", "meal"],
    "transport": ["gas", "gasoline", "fuel", "uber", "lyft", "ride", "taxi", "parking", "transit", "car"],
    "home": ["hardware", "furniture", "paint", "home", "house", "renovation", "repair", "fixture", "garden", "lawn"],
    "fun": ["movie", "theater", "game", "entertainment", "ticket", "concert", "sport", "hobby", "museum"],
}

_DESCRIPTION_PATTERNS = {
    category: re.compile(r"\b(?:" + "|".join(map(re.escape, words)) + r")s?\b", re.I)
    for category, words in DESCRIPTION_KEYWORDS.items()
}


def keyword_signal(description: Optional[str]) -> Optional[CategorySignal]:
    if not description:
        return None
    # description is free text from OCR; the cap keeps this scan bounded
    text = description[:10_000]

    best_category, best_hits = None, 0
    for category, pattern in _DESCRIPTION_PATTERNS.items():
        hits = len(pattern.findall(text))
        if hits > best_hits:
            best_category, best_hits = category, hits

    if best_category is None:
        return None

    confidence = 0.5 + min(best_hits / 3, 1.0) * 0.3
    return CategorySignal(best_category, round(confidence, 3), SignalSource.KEYWORD)


@dataclass(frozen=True)
class CategoryRule:
    keywords: tuple[str, ...]
    amount_min: float
    amount_max: float
    typical_amount: float
    pattern: re.Pattern = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        words = sorted(self.keywords, key=len, reverse=True)
        object.__setattr__(
            self, "pattern", re.compile(r"(?<![a-z])(" + "|".join(map(re.escape, words)) + r")([a-z]?)", re.I)
        )


CATEGORY_RULES: dict[str, CategoryRule] = {
    "groceries": CategoryRule(
        keywords=(
            "whole foods", "trader joes", "trader joe's", "safeway", "kroger", "albertsons",
            "costco", "walmart", "target", "aldi", "sprouts", "fresh market",
            "grocery", "groceries", "supermarket", "market", "food store",
            "produce", "organic", "farmers market",
        ),
        amount_min=20, amount_max=300, typical_amount=60,
    ),
    "food": CategoryRule(
        keywords=(
            "starbucks", "coffee", "cafe", "restaurant", "bistro", "grill",
            "pizza", "burger", "taco", "sushi", "diner", "bakery",
            "mcdonalds", "subway", "chipotle", "panera", "wendys",
            "dunkin", "donut", "breakfast", "lunch", "dinner",
            "kitchen", "bar", "pub", "tavern", "eatery", "dining",
        ),
        amount_min=3, amount_max=150, typical_amount=15,
    ),
    "transport": CategoryRule(
        keywords=(
            "shell", "chevron", "bp", "exxon", "mobil", "texaco", "gas",
            "gasoline", "fuel", "petrol", "station",
            "uber", "lyft", "taxi", "ride", "transit", "metro", "bus",
            "parking", "garage", "toll", "auto", "car",
        ),
        amount_min=5, amount_max=100, typical_amount=45,
    ),
    "home": CategoryRule(
        keywords=(
            "home depot", "lowes", "ace hardware", "hardware",
            "ikea", "furniture", "bed bath", "wayfair",
            "paint", "lumber", "tools", "renovation", "improvement",
            "garden", "lawn", "plumbing", "electrical", "fixture",
        ),
        amount_min=20, amount_max=500, typical_amount=100,
    ),
    "fun": CategoryRule(
        keywords=(
            "amc", "theater", "theatre", "cinema", "movie", "film",
            "netflix", "hulu", "spotify", "entertainment", "streaming",
            "game", "gaming", "playstation", "xbox", "steam",
            "concert", "ticket", "museum", "park", "zoo",
            "golf", "bowling", "arcade", "hobby", "sport",
        ),
        amount_min=5, amount_max=200, typical_amount=30,
    ),
}


def keyword_score(text: str, rule: CategoryRule) -> float:
    """How strongly `text` names a merchant of this category (0..1).

    Longer keywords weigh more; a keyword standing as a whole word weighs 1.5x.
    """
    if not text:
        return 0.0

    total_weight = 0.0
    exact_word = False
    seen: set[str] = set()
    for m in rule.pattern.finditer(text):
        keyword = m.group(1).lower()
        if keyword in seen:
            continue
        seen.add(keyword)
        weight = len(keyword) / 8
        if not m.group(2):
            weight *= 1.5
            exact_word = True
        total_weight += weight

    if not seen:
        return 0.0

    score = min(total_weight / 1.5, 1.0)
    if exact_word:
        score = min(score * 1.2, 1.0)
    return score


def amount_score(amount: Optional[float], rule: CategoryRule) -> float:
    if not amount or amount <= 0:
        return 0.5

    if rule.amount_min <= amount <= rule.amount_max:
        distance = abs(amount - rule.typical_amount)
        typical = 1 - distance / (rule.amount_max - rule.amount_min)
        return max(0.7, min(typical, 1.0))

    if amount < rule.amount_min:
        return max(0.3, 0.7 - (rule.amount_min - amount) / rule.amount_min)
    return max(0.2, 0.7 - (amount - rule.amount_max) / rule.amount_max)


def generic_scores(merchant: Optional[str], amount: Optional[float], description: Optional[str]) -> list[tuple[str, float]]:
    text = f"{merchant or ''} {description or ''}".strip()[:10_000]
    scores = []
    for category, rule in CATEGORY_RULES.items():
        kw = keyword_score(text, rule)
        am = amount_score(amount, rule)
        if kw > 0.7:
            combined = kw * 0.85 + am * 0.15
        elif kw > 0.4:
            combined = kw * 0.75 + am * 0.25
        else:
            combined = kw * 0.6 + am * 0.4
        scores.append((category, combined))
    scores.sort(key=lambda item: item[1], reverse=True)
    return scores


def generic_signal(merchant: Optional[str], amount: Optional[float], description: Optional[str]) -> CategorySignal:
    if not merchant and not description:
        return CategorySignal("other", 0.1, SignalSource.GENERIC)

    category, score = generic_scores(merchant, amount, description)[0]
    if score < 0.4:
        category = "other"
    return CategorySignal(category, round(score, 3), SignalSource.GENERIC)


# ---- aggregation ----

@dataclass
class _CategoryTally:
    category: str
    signals: list[CategorySignal] = field(default_factory=list)

    @property
    def best(self) -> float:
        return max(s.confidence for s in self.signals)

    @property
    def has_exact(self) -> bool:
        return any(s.source is SignalSource.EXACT_MERCHANT for s in self.signals)


def aggregate(signals: Iterable[CategorySignal], threshold: float | None = None) -> CategoryPrediction:
    """Combine scorer outputs into one prediction.

    An exact merchant match decides the category whenever present; otherwise the strongest
    single signal does. Every other signal agreeing with the winner adds AGREEMENT_BONUS.
    """
    threshold = settings.category_confidence_threshold if threshold is None else threshold

    tallies: dict[str, _CategoryTally] = {}
    for signal in signals:
        tallies.setdefault(signal.category, _CategoryTally(signal.category)).signals.append(signal)

    if not tallies:
        return CategoryPrediction(category=None, confidence=0.0, source=SignalSource.GENERIC, below_threshold=True)

    ranked = sorted(tallies.values(), key=lambda t: (t.has_exact, t.best), reverse=True)
    winner = ranked[0]

    agreeing = sorted(winner.signals, key=lambda s: SOURCE_PRIORITY.index(s.source))
    confidence = winner.best + AGREEMENT_BONUS * (len(agreeing) - 1)
    confidence = round(min(confidence, MAX_CONFIDENCE), 3)

    standalone = [s for s in agreeing if s.confidence >= threshold]
    if standalone:
        source = standalone[0].source
    elif len(agreeing) > 1 and confidence >= threshold:
        source = SignalSource.AGGREGATE
    else:
        source = max(agreeing, key=lambda s: s.confidence).source

    alternatives = [
        CategoryAlternative(category=t.category, confidence=round(t.best, 3))
        for t in sorted(ranked[1:], key=lambda t: t.best, reverse=True)[:3]
    ]

    below = confidence < threshold
    return CategoryPrediction(
        category=None if below else winner.category,
        confidence=confidence,
        source=source,
        alternatives=alternatives,
        below_threshold=below,
    )


Scorer = Callable[[Optional[str], Optional[float], Optional[str], Sequence[HistoryRecord]], Optional[CategorySignal]]

DEFAULT_SCORERS: list[Scorer] = [
    lambda merchant, amount, description, history: exact_merchant_signal(merchant, history),
    lambda merchant, amount, description, history: fuzzy_merchant_signal(merchant, history),
    lambda merchant, amount, description, history: keyword_signal(description),
    lambda merchant, amount, description, history: generic_signal(merchant, amount, description),
]


class CategoryClassifier:
    def __init__(self, scorers: Sequence[Scorer] | None = None, threshold: float | None = None):
        self.scorers = list(scorers) if scorers is not None else list(DEFAULT_SCORERS)
        self.threshold = settings.category_confidence_threshold if threshold is None else threshold

    def classify(
        self,
        merchant: Optional[str],
        amount: Optional[float | Decimal],
        description: Optional[str] = "",
        history: Sequence[HistoryRecord | dict] = (),
    ) -> CategoryPrediction:
        records = [r if isinstance(r, HistoryRecord) else HistoryRecord.model_validate(r) for r in history]
        value = float(amount) if amount is not None else None

        signals = []
        for scorer in self.scorers:
            signal = scorer(merchant, value, description, records)
            if signal is not None:
                signals.append(signal)

        prediction = aggregate(signals, self.threshold)
        logger.debug(
            "classified merchant=%r category=%s confidence=%.3f source=%s signals=%s",
            merchant, prediction.category, prediction.confidence, prediction.source.value, len(signals),
        )
        return prediction
