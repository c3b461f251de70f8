from decimal import Decimal

import pytest

from expense_scan.services.category_classifier import (
    MAX_CONFIDENCE,
    CategoryClassifier,
    CategorySignal,
    HistoryRecord,
    SignalSource,
    aggregate,
    exact_merchant_signal,
    fuzzy_merchant_signal,
    generic_signal,
    keyword_signal,
)


@pytest.fixture
def classifier():
    return CategoryClassifier(threshold=0.55)


def visits(merchant, category, n, amount="10.00"):
    return [HistoryRecord(merchant=merchant, category=category, amount=Decimal(amount)) for _ in range(n)]


def test_known_merchant_history_wins(classifier):
    history = visits("Starbucks", "food", 20)
    prediction = classifier.classify("Starbucks", Decimal("6.45"), history=history)

    assert prediction.category == "food"
    assert prediction.confidence > 0.9
    assert prediction.source == SignalSource.EXACT_MERCHANT
    assert prediction.below_threshold is False


def test_unknown_merchant_without_history_is_not_a_confident_guess(classifier):
    prediction = classifier.classify("Xyzzy Holdings", Decimal("42.00"))

    assert prediction.category is None
    assert prediction.confidence < 0.55
    assert prediction.below_threshold is True


def test_no_input_at_all(classifier):
    prediction = classifier.classify(None, None)

    assert prediction.category is None
    assert prediction.source == SignalSource.GENERIC


def test_history_may_be_plain_dicts(classifier):
    history = [{"merchant": "Corner Deli", "category": "food", "amount": "8.50"}] * 4
    prediction = classifier.classify("corner  deli", Decimal("9.00"), history=history)

    assert prediction.category == "food"
    assert prediction.source == SignalSource.EXACT_MERCHANT


def test_exact_signal_reflects_consistency():
    history = visits("Target", "groceries", 3) + visits("Target", "home", 1)
    signal = exact_merchant_signal("TARGET", history)

    assert signal.category == "groceries"
    # 0.9 + (0.75 * 0.7 + 0.4 * 0.3) * 0.1
    assert signal.confidence == pytest.approx(0.9645, abs=1e-3)


def test_exact_signal_needs_matching_merchant():
    assert exact_merchant_signal("Target", visits("Costco", "groceries", 3)) is None
    assert exact_merchant_signal("", visits("Costco", "groceries", 3)) is None


def test_fuzzy_merchant_match(classifier):
    history = visits("Whole Foods Market", "groceries", 5)

    signal = fuzzy_merchant_signal("Whole Foods Mkt", history)
    assert signal.category == "groceries"
    assert signal.source == SignalSource.FUZZY_MERCHANT
    assert 0.55 < signal.confidence < 0.9

    prediction = classifier.classify("Whole Foods Mkt", None, history=history)
    assert prediction.category == "groceries"
    assert prediction.source == SignalSource.FUZZY_MERCHANT


def test_fuzzy_ignores_dissimilar_names():
    assert fuzzy_merchant_signal("Shell", visits("Whole Foods Market", "groceries", 5)) is None


def test_keyword_signal_counts_hits():
    signal = keyword_signal("coffee and breakfast sandwich")

    assert signal.category == "food"
    assert signal.confidence == pytest.approx(0.7)
    assert keyword_signal("") is None
    assert keyword_signal("nothing relevant here") is None


def test_generic_signal_uses_merchant_keywords():
    signal = generic_signal("Chevron", 45.0, "")
    assert signal.category == "transport"
    assert signal.confidence > 0.7


def test_generic_signal_without_anything_is_other():
    signal = generic_signal(None, 20.0, None)
    assert (signal.category, signal.confidence) == ("other", 0.1)


def test_exact_match_beats_stronger_generic_signal():
    prediction = aggregate(
        [
            CategorySignal("food", 0.91, SignalSource.EXACT_MERCHANT),
            CategorySignal("groceries", 0.95, SignalSource.GENERIC),
        ],
        threshold=0.55,
    )

    assert prediction.category == "food"
    assert [a.category for a in prediction.alternatives] == ["groceries"]


def test_alternatives_sorted_and_capped():
    prediction = aggregate(
        [
            CategorySignal("food", 0.7, SignalSource.KEYWORD),
            CategorySignal("fun", 0.6, SignalSource.GENERIC),
            CategorySignal("home", 0.3, SignalSource.GENERIC),
            CategorySignal("transport", 0.5, SignalSource.GENERIC),
            CategorySignal("groceries", 0.4, SignalSource.GENERIC),
        ],
        threshold=0.55,
    )

    assert prediction.category == "food"
    assert prediction.source == SignalSource.KEYWORD
    assert [a.category for a in prediction.alternatives] == ["fun", "transport", "groceries"]
    confidences = [a.confidence for a in prediction.alternatives]
    assert confidences == sorted(confidences, reverse=True)


def test_agreeing_weak_signals_aggregate():
    prediction = aggregate(
        [
            CategorySignal("food", 0.5, SignalSource.KEYWORD),
            CategorySignal("food", 0.45, SignalSource.GENERIC),
        ],
        threshold=0.55,
    )

    assert prediction.category == "food"
    assert prediction.confidence == pytest.approx(0.6)
    assert prediction.source == SignalSource.AGGREGATE


def test_confidence_is_capped():
    prediction = aggregate(
        [
            CategorySignal("food", 0.99, SignalSource.EXACT_MERCHANT),
            CategorySignal("food", 0.9, SignalSource.KEYWORD),
            CategorySignal("food", 0.9, SignalSource.GENERIC),
        ],
    )
    assert prediction.confidence == MAX_CONFIDENCE


def test_no_signals():
    prediction = aggregate([], threshold=0.55)
    assert prediction.category is None
    assert prediction.confidence == 0.0
