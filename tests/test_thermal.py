import pytest

from solderbot.core.thermal import (
    compute_compensation, pad_category, MIN_TIP_TEMP_C, MAX_TIP_TEMP_C,
)


def test_categories_by_area():
    assert pad_category(9.99) == "small"
    assert pad_category(10.0) == "medium"
    assert pad_category(49.9) == "medium"
    assert pad_category(50.0) == "large"
    assert pad_category(0) is None


@pytest.mark.parametrize("area", [0, -3.0, None, float("nan")])
def test_no_suggestion_without_area(area):
    c = compute_compensation(area)
    assert c.category is None
    assert c.compensated_temp_c is None
    assert c.compensation_c is None


def test_compensation_formula():
    c = compute_compensation(4.0)
    assert c.compensation_c == 4.0
    assert c.compensated_temp_c == 349
    assert c.category == "small"

    c = compute_compensation(2.0)
    assert c.compensation_c == 2.8   # sqrt(2) * 2 = 2.828...


def test_clamped_to_heater_range():
    assert compute_compensation(10_000).compensated_temp_c == MAX_TIP_TEMP_C
    assert compute_compensation(1.0, base_temp_c=200).compensated_temp_c == MIN_TIP_TEMP_C


def test_monotonic_and_bounded():
    areas = [0.01 * 1.3 ** k for k in range(60)]
    temps = [compute_compensation(a).compensated_temp_c for a in areas]
    assert all(MIN_TIP_TEMP_C <= t <= MAX_TIP_TEMP_C for t in temps)
    assert all(b >= a for a, b in zip(temps, temps[1:]))
