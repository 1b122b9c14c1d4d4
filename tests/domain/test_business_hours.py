"""
Tests for the hourly business-hours counter used by FTT metrics.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from hypothesis import given
from hypothesis import strategies as st

from refinery_kernel.domain.business_hours import business_hours

UTC = timezone.utc
MONDAY_8AM = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)
FRIDAY_8PM = datetime(2024, 1, 5, 20, 0, tzinfo=UTC)


class TestBusinessHours:
    def test_same_instant_is_zero(self):
        assert business_hours(MONDAY_8AM, MONDAY_8AM) == 0

    def test_end_before_start_is_zero(self):
        assert business_hours(MONDAY_8AM, MONDAY_8AM - timedelta(hours=5)) == 0

    def test_whole_hours_on_a_weekday(self):
        assert business_hours(MONDAY_8AM, MONDAY_8AM + timedelta(hours=30)) == 30

    def test_partial_hour_counts_as_a_step(self):
        assert business_hours(MONDAY_8AM, MONDAY_8AM + timedelta(minutes=30)) == 1
        assert business_hours(MONDAY_8AM, MONDAY_8AM + timedelta(minutes=60)) == 1
        assert business_hours(MONDAY_8AM, MONDAY_8AM + timedelta(minutes=61)) == 2

    def test_weekend_hours_are_skipped(self):
        monday_8am_next = datetime(2024, 1, 8, 8, 0, tzinfo=UTC)

        # Fri 20:00-24:00 and Mon 00:00-08:00
        assert business_hours(FRIDAY_8PM, monday_8am_next) == 12

    def test_custom_weekend(self):
        saturday = datetime(2024, 1, 6, 0, 0, tzinfo=UTC)

        assert business_hours(saturday, saturday + timedelta(hours=24)) == 0
        assert (
            business_hours(saturday, saturday + timedelta(hours=24), weekend_days={4})
            == 24
        )

    def test_weekday_judged_in_business_timezone(self):
        # Sunday 23:00 UTC is Monday 01:00 at UTC+2
        plus_two = timezone(timedelta(hours=2))
        sunday_11pm = datetime(2024, 1, 7, 23, 0, tzinfo=UTC)

        assert business_hours(sunday_11pm, sunday_11pm + timedelta(hours=1)) == 0
        assert (
            business_hours(sunday_11pm, sunday_11pm + timedelta(hours=1), tz=plus_two)
            == 1
        )

    def test_steps_are_wall_clock_hours_across_dst(self):
        london = ZoneInfo("Europe/London")
        # 2024-03-31: 01:00 GMT jumps to 02:00 BST.  The 01:30 step sits in
        # the gap and resolves to the same instant as 02:30 BST.
        spring = datetime(2024, 3, 31, 0, 30, tzinfo=UTC)
        assert (
            business_hours(
                spring, spring + timedelta(hours=4), weekend_days=(), tz=london
            )
            == 5
        )
        # 2024-10-27: 02:00 BST falls back to 01:00 GMT.  From 01:30 BST the
        # next step is 02:30 GMT, so the repeated hour is never visited.
        autumn = datetime(2024, 10, 27, 0, 30, tzinfo=UTC)
        assert (
            business_hours(
                autumn, autumn + timedelta(hours=3), weekend_days=(), tz=london
            )
            == 2
        )


class TestBusinessHoursProperties:
    @given(
        st.integers(min_value=0, max_value=24 * 21),
        st.integers(min_value=0, max_value=24 * 21),
    )
    def test_never_exceeds_elapsed_steps(self, offset_hours, span_hours):
        start = MONDAY_8AM + timedelta(hours=offset_hours)
        end = start + timedelta(hours=span_hours)

        result = business_hours(start, end)

        assert 0 <= result <= span_hours

    @given(st.integers(min_value=0, max_value=24 * 14))
    def test_full_week_adds_exactly_five_days(self, offset_hours):
        start = MONDAY_8AM + timedelta(hours=offset_hours)
        end = start + timedelta(hours=1)

        assert business_hours(start, end + timedelta(days=7)) == (
            business_hours(start, end) + 120
        )
