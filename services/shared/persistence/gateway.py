"""Persistence gateway interface consumed by the sync pipeline."""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from services.shared.activity import DailyAggregate

# Columns of users exposed to consumers; summary updates write the subset
# present on SyncSummary
USER_SUMMARY_COLUMNS = (
    "github_user_id",
    "github_login",
    "total_commits",
    "total_prs",
    "total_issues",
    "total_reviews",
    "total_contributions",
    "total_repos",
    "public_repos",
    "current_streak",
    "longest_streak",
    "productivity_score",
    "xp",
    "level",
    "level_title",
    "auto_sync",
    "last_synced_at",
)


class PersistenceFailure(RuntimeError):
    """
    Raised when the store rejects a read or write; fatal to a sync
    """


class UserNotFound(LookupError):
    """
    Raised when no provisioned user row matches the identity
    """

    def __init__(self, user_id):
        super().__init__(f"User '{user_id}' not found")
        self.user_id = user_id


class PersistenceGateway(ABC):
    """
    Store for user summaries, daily aggregates and repository snapshots

    Writes are upserts keyed by natural keys, so replaying a sync converges
    on the same rows
    """

    @abstractmethod
    def get_user_cooldown_state(self, user_id) -> Optional[datetime]:
        """
        Return the user's last_synced_at (None when never synced)

        Raises:
            UserNotFound: When the user is not provisioned
        """

    @abstractmethod
    def list_active_dates(self, user_id) -> Set[date]:
        """Return stored dates with total_commits > 0."""

    @abstractmethod
    def upsert_daily_aggregates(self, user_id, batch: Sequence[DailyAggregate]) -> None:
        """Insert or fully overwrite one row per (user_id, date)."""

    @abstractmethod
    def upsert_repositories(self, user_id, batch: Sequence[Mapping[str, Any]]) -> None:
        """Insert or overwrite one row per (user_id, github_repo_id)."""

    @abstractmethod
    def update_user_summary(self, user_id, summary, synced_at, expected_last_synced_at) -> bool:
        """
        Apply a SyncSummary and stamp last_synced_at

        The write only applies while last_synced_at still equals
        expected_last_synced_at

        Returns:
            bool True when the row was updated
        """

    @abstractmethod
    def get_user_summary(self, user_id) -> Optional[Dict[str, Any]]:
        """Return the user's summary columns, or None when unknown."""

    @abstractmethod
    def list_daily_aggregates(self, user_id, start=None, end=None) -> List[Dict[str, Any]]:
        """Return daily rows ordered by date, bounded inclusively by start/end."""
