"""Property-based tests for money and period arithmetic."""

from datetime import date, timedelta
from decimal import Decimal

from hypothesis import given
from hypothesis import strategies as st

from billing_engine.gateway.base import from_cents, to_cents
from billing_engine.services.commission_calculator import CommissionCalculator, add_months
from billing_engine.services.payroll_aggregator import (
    PAYOUT_OFFSET_DAYS,
    PERIOD_ANCHOR,
    PERIOD_DAYS,
    period_for,
)

days = st.dates(min_value=date(2020, 1, 1), max_value=date(2035, 12, 31))
amounts = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("100000.00"), places=2, allow_nan=False
)
rates = st.decimals(min_value=Decimal("0"), max_value=Decimal("1"), places=4, allow_nan=False)


class TestPeriodProperties:
    @given(day=days)
    def test_period_contains_day(self, day):
        period = period_for(day)

        assert period.contains(day)
        assert (period.end - period.start).days == PERIOD_DAYS - 1

    @given(day=days)
    def test_period_aligned_to_anchor(self, day):
        period = period_for(day)

        assert (period.start - PERIOD_ANCHOR).days % PERIOD_DAYS == 0
        assert period.start.weekday() == PERIOD_ANCHOR.weekday()

    @given(day=days)
    def test_payout_follows_period_end(self, day):
        period = period_for(day)

        assert period.payout_date == period.end + timedelta(days=PAYOUT_OFFSET_DAYS)

    @given(day=days)
    def test_adjacent_periods_do_not_overlap(self, day):
        period = period_for(day)
        following = period_for(period.end + timedelta(days=1))

        assert following.start == period.end + timedelta(days=1)


class TestMoneyProperties:
    @given(basis=amounts, rate=rates)
    def test_commission_within_half_a_cent(self, basis, rate):
        amount = CommissionCalculator(None).commission_amount(basis, rate)

        assert amount.as_tuple().exponent == -2
        assert abs(amount - basis * rate) <= Decimal("0.005")

    @given(basis=amounts, rate=rates)
    def test_commission_never_exceeds_basis(self, basis, rate):
        amount = CommissionCalculator(None).commission_amount(basis, rate)

        assert Decimal("0") <= amount <= basis

    @given(amount=amounts)
    def test_cents_conversion_is_exact(self, amount):
        assert from_cents(to_cents(amount)) == amount

    @given(start=days, months=st.integers(min_value=0, max_value=36))
    def test_add_months_moves_forward(self, start, months):
        later = add_months(start, months)

        assert later >= start
        assert (later.year - start.year) * 12 + later.month - start.month == months
        assert later.day <= start.day
