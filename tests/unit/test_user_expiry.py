"""Tests for cumulative expiry and the user read model."""

from unittest.mock import MagicMock

from paying.models import OriginalTransactionDocument, Subscription, User, calculate_cumulative_expiry
from paying.utils.durations import MILLIS_PER_DAY

NOW = 1_700_000_000_000
DAY = MILLIS_PER_DAY


def make_subscription(id, starts_at=None, expires_at=None, group="membership", product="membership.monthly"):
    original = OriginalTransactionDocument(
        id=id,
        product=product,
        renewal_product=product,
        product_group=group,
        user="user-1",
        service="fake",
        created_at=NOW,
        starts_at=starts_at,
        expires_at=expires_at,
    )
    repository = MagicMock()
    repository.now_millis.return_value = NOW
    return Subscription(original, [], repository)


class TestCalculateCumulativeExpiry:
    def test_nothing_paid(self):
        assert calculate_cumulative_expiry([], NOW) == 0

    def test_single_window(self):
        assert calculate_cumulative_expiry([(NOW, NOW + 30 * DAY)], NOW) == NOW + 30 * DAY

    def test_stacked_windows_accumulate(self):
        windows = [(NOW, NOW + 30 * DAY), (NOW + 30 * DAY, NOW + 395 * DAY)]
        assert calculate_cumulative_expiry(windows, NOW) == NOW + 395 * DAY

    def test_overlapping_window_adds_full_length(self):
        # B starts inside A, so its whole length is added on top of A
        windows = [(NOW, NOW + 30 * DAY), (NOW + 10 * DAY, NOW + 40 * DAY)]
        assert calculate_cumulative_expiry(windows, NOW + 10 * DAY) == NOW + 60 * DAY

    def test_gap_replaces_running_expiry(self):
        windows = [(NOW - 100 * DAY, NOW - 70 * DAY), (NOW - 10 * DAY, NOW + 20 * DAY)]
        assert calculate_cumulative_expiry(windows, NOW) == NOW + 20 * DAY

    def test_future_window_after_gap_is_ignored(self):
        windows = [(NOW - 100 * DAY, NOW - 70 * DAY), (NOW + 10 * DAY, NOW + 40 * DAY)]
        assert calculate_cumulative_expiry(windows, NOW) == NOW - 70 * DAY

    def test_order_of_input_does_not_matter(self):
        windows = [(NOW + 30 * DAY, NOW + 395 * DAY), (NOW, NOW + 30 * DAY)]
        assert calculate_cumulative_expiry(windows, NOW) == NOW + 395 * DAY


class TestUser:
    def test_groups_subscriptions_by_identifier(self):
        monthly = make_subscription("ot-1", NOW, NOW + 30 * DAY)
        other = make_subscription("ot-2", NOW, NOW + DAY, group=None, product="addon")
        user = User("user-1", [monthly, other], [], [], NOW)

        assert [s.id for s in user.get_subscriptions("membership")] == ["ot-1"]
        assert [s.id for s in user.get_subscriptions("addon")] == ["ot-2"]
        assert user.get_subscriptions("unknown") == []

    def test_expire_time_ignores_pending_lineages(self):
        paid = make_subscription("ot-1", NOW, NOW + 30 * DAY)
        pending = make_subscription("ot-2")
        user = User("user-1", [paid, pending], [], [], NOW)

        assert user.get_expire_time("membership") == NOW + 30 * DAY

    def test_expire_time_stacks_group(self):
        monthly = make_subscription("ot-1", NOW, NOW + 30 * DAY)
        yearly = make_subscription("ot-2", NOW + 30 * DAY, NOW + 395 * DAY, product="membership.yearly")
        user = User("user-1", [monthly, yearly], [], [], NOW)

        assert user.get_expire_time("membership") == NOW + 395 * DAY

    def test_expire_time_at_explicit_time(self):
        old = make_subscription("ot-1", NOW - 100 * DAY, NOW - 70 * DAY)
        later = make_subscription("ot-2", NOW + 10 * DAY, NOW + 40 * DAY)
        user = User("user-1", [old, later], [], [], NOW)

        assert user.get_expire_time("membership") == NOW - 70 * DAY
        assert user.get_expire_time("membership", now_millis=NOW + 10 * DAY) == NOW + 40 * DAY

    def test_unknown_identifier(self):
        assert User("user-1", [], [], [], NOW).get_expire_time("membership") == 0
