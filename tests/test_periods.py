from datetime import date

import pytest

from errors import ValidationError
from periods import add_months, iter_months, month_end, resolve_period


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
    assert add_months(date(2025, 3, 15), -3) == date(2024, 12, 15)


def test_month_end_and_iteration() -> None:
    assert month_end(date(2025, 2, 10)) == date(2025, 2, 28)
    assert list(iter_months(date(2025, 11, 20), date(2026, 1, 5))) == [
        date(2025, 11, 1),
        date(2025, 12, 1),
        date(2026, 1, 1),
    ]


def test_resolve_quarter_and_previous() -> None:
    period = resolve_period("quarter", today=date(2025, 5, 15))
    assert period.start == date(2025, 4, 1)
    assert period.end == date(2025, 5, 15)

    previous = period.previous()
    assert previous.end == date(2025, 3, 31)
    assert previous.days == period.days


def test_resolve_custom_period_validates_order() -> None:
    period = resolve_period("custom", "2025-01-01", "2025-01-31")
    assert period.days == 31

    with pytest.raises(ValidationError):
        resolve_period("custom", "2025-02-01", "2025-01-01")
    with pytest.raises(ValidationError):
        resolve_period("fortnight")
