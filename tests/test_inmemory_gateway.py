from datetime import date, datetime, timezone

import pytest

from services.shared.activity import RawActivityEvent, aggregate_events
from services.shared.persistence.gateway import UserNotFound
from services.shared.persistence.inmemory import InMemoryPersistenceGateway
from services.shared.summary import build_sync_summary


def _aggregates(*timestamps):
    return aggregate_events(
        [RawActivityEvent(timestamp=ts, kind="commit", repository_full_name="octo/app") for ts in timestamps]
    )


@pytest.fixture()
def gateway():
    store = InMemoryPersistenceGateway()
    store.add_user(101, "octo")
    return store


def test_unknown_user_raises_expected():
    with pytest.raises(UserNotFound):
        InMemoryPersistenceGateway().get_user_cooldown_state(5)


def test_daily_upsert_overwrites_by_natural_key_expected(gateway):
    gateway.upsert_daily_aggregates(101, list(_aggregates("2024-01-10T09:00:00Z").values()))
    gateway.upsert_daily_aggregates(
        101,
        list(_aggregates("2024-01-10T09:00:00Z", "2024-01-10T11:00:00Z").values()),
    )

    rows = gateway.list_daily_aggregates(101)

    assert len(rows) == 1
    assert rows[0]["total_commits"] == 2


def test_list_daily_aggregates_filters_inclusive_range_expected(gateway):
    aggregates = _aggregates("2024-01-08T09:00:00Z", "2024-01-09T09:00:00Z", "2024-01-10T09:00:00Z")
    gateway.upsert_daily_aggregates(101, list(aggregates.values()))

    rows = gateway.list_daily_aggregates(101, start=date(2024, 1, 9), end=date(2024, 1, 10))

    assert [row["date"] for row in rows] == [date(2024, 1, 9), date(2024, 1, 10)]
    assert gateway.list_active_dates(101) == {date(2024, 1, 8), date(2024, 1, 9), date(2024, 1, 10)}


def test_update_user_summary_is_compare_and_swap_expected(gateway):
    summary = build_sync_summary(
        _aggregates("2024-01-10T09:00:00Z"),
        stored_active_dates=set(),
        commit_total=1,
        pr_total=0,
        issue_total=0,
        review_total=0,
        repositories=[],
        today=date(2024, 1, 10),
    )
    first = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
    second = datetime(2024, 1, 10, 13, 0, tzinfo=timezone.utc)

    assert gateway.update_user_summary(101, summary, synced_at=first, expected_last_synced_at=None) is True
    assert gateway.update_user_summary(101, summary, synced_at=second, expected_last_synced_at=None) is False

    stored = gateway.get_user_summary(101)
    assert stored["last_synced_at"] == first
    assert stored["total_commits"] == 1
    assert stored["current_streak"] == 1
    assert "days_with_activity" not in stored


def test_reads_return_copies_expected(gateway):
    gateway.get_user_summary(101)["xp"] = 999

    assert gateway.get_user_summary(101)["xp"] == 0
