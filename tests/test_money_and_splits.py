from decimal import Decimal

import pytest

from groupsplit.money import amounts_close, as_float, to_decimal
from groupsplit.splits import build_splits, equal_split, manual_amount_split, percentage_split


def test_to_decimal_quantizes_supported_types():
    assert to_decimal(10) == Decimal("10.00")
    assert to_decimal(0.1 + 0.2) == Decimal("0.30")
    assert to_decimal(" 12.345 ") == Decimal("12.35")
    assert to_decimal(Decimal("1.005")) == Decimal("1.01")


@pytest.mark.parametrize(
    "value", ["abc", None, True, [], "NaN", "Infinity", float("nan"), float("inf"), Decimal("-Infinity"), "1e40"]
)
def test_to_decimal_rejects_garbage(value):
    with pytest.raises(ValueError):
        to_decimal(value)


def test_amounts_close_and_as_float():
    assert amounts_close(Decimal("10.00"), Decimal("10.01"))
    assert not amounts_close(Decimal("10.00"), Decimal("10.02"))
    assert as_float(Decimal("3.333")) == 3.33


def test_equal_split_gives_remainder_to_last_member():
    shares = equal_split(Decimal("100.00"), [1, 2, 3])
    assert shares == [(1, Decimal("33.33")), (2, Decimal("33.33")), (3, Decimal("33.34"))]
    assert sum(amount for _, amount in shares) == Decimal("100.00")


def test_equal_split_never_goes_negative():
    shares = equal_split(Decimal("0.05"), list(range(1, 8)))
    assert [amount for _, amount in shares] == [Decimal("0.00")] * 2 + [Decimal("0.01")] * 5
    assert sum(amount for _, amount in shares) == Decimal("0.05")


def test_equal_split_requires_members():
    with pytest.raises(ValueError, match="no_split_members"):
        equal_split(Decimal("10.00"), [])


def test_duplicate_members_are_rejected():
    with pytest.raises(ValueError, match="duplicate_split_member"):
        equal_split(Decimal("10.00"), [1, 1])


def test_manual_amounts_must_total_the_expense():
    shares = manual_amount_split(Decimal("50.00"), [1, 2], {"1": "20", 2: 30})
    assert shares == [(1, Decimal("20.00")), (2, Decimal("30.00"))]

    with pytest.raises(ValueError, match="share_total_mismatch"):
        manual_amount_split(Decimal("50.00"), [1, 2], {1: 20, 2: 20})


def test_manual_amount_missing_entry_counts_as_zero():
    shares = manual_amount_split(Decimal("50.00"), [1, 2], {1: "50"})
    assert shares == [(1, Decimal("50.00")), (2, Decimal("0.00"))]


def test_manual_amount_rejects_negative_values():
    with pytest.raises(ValueError, match="invalid_split_value"):
        manual_amount_split(Decimal("10.00"), [1, 2], {1: 20, 2: -10})


def test_percentage_split_converts_to_amounts():
    shares = percentage_split(Decimal("200.00"), [1, 2], {1: 25, 2: 75})
    assert shares == [(1, Decimal("50.00")), (2, Decimal("150.00"))]


def test_percentage_split_keeps_the_total_exact():
    shares = percentage_split(Decimal("10.00"), [1, 2, 3], {1: "33.33", 2: "33.33", 3: "33.34"})
    assert sum(amount for _, amount in shares) == Decimal("10.00")


def test_percentages_must_total_one_hundred():
    with pytest.raises(ValueError, match="percentage_total_mismatch"):
        percentage_split(Decimal("10.00"), [1, 2], {1: 50, 2: 40})


def test_percentages_over_one_hundred_are_rejected():
    with pytest.raises(ValueError, match="percentage_total_mismatch"):
        percentage_split(Decimal("1000.00"), [1, 2], {1: "100.01", 2: "0"})


def test_build_splits_dispatch():
    assert build_splits(Decimal("9.00"), "equal", [1, 2, 3]) == equal_split(Decimal("9.00"), [1, 2, 3])
    assert build_splits(Decimal("9.00"), "manual", [1], custom={1: 9}) == [(1, Decimal("9.00"))]
    assert build_splits(Decimal("9.00"), "manual", [1], "percentage", {1: 100}) == [(1, Decimal("9.00"))]

    with pytest.raises(ValueError, match="invalid_split_type"):
        build_splits(Decimal("9.00"), "weird", [1])
    with pytest.raises(ValueError, match="invalid_split_method"):
        build_splits(Decimal("9.00"), "manual", [1], "shares")
