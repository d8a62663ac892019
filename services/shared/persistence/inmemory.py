import copy
import threading
from typing import Any, Dict, List, Optional, Set

from services.shared.persistence.gateway import USER_SUMMARY_COLUMNS, PersistenceGateway, UserNotFound


class InMemoryPersistenceGateway(PersistenceGateway):
    """
    Dict-backed gateway for tests and local runs

    Rows are keyed the same way as the SQL tables, so upserts overwrite in
    place. Reads return copies
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.users: Dict[int, Dict[str, Any]] = {}
        self.daily_stats: Dict[tuple, Dict[str, Any]] = {}
        self.repositories: Dict[tuple, Dict[str, Any]] = {}

    def add_user(self, user_id, github_login, last_synced_at=None, auto_sync=True) -> None:
        with self._lock:
            self.users[int(user_id)] = {
                "github_user_id": int(user_id),
                "github_login": github_login,
                "total_commits": 0,
                "total_prs": 0,
                "total_issues": 0,
                "total_reviews": 0,
                "total_contributions": 0,
                "total_repos": 0,
                "public_repos": 0,
                "current_streak": 0,
                "longest_streak": 0,
                "productivity_score": 0,
                "xp": 0,
                "level": 1,
                "level_title": "Newcomer",
                "auto_sync": auto_sync,
                "last_synced_at": last_synced_at,
            }

    def _user(self, user_id) -> Dict[str, Any]:
        user = self.users.get(int(user_id))
        if user is None:
            raise UserNotFound(user_id)
        return user

    def get_user_cooldown_state(self, user_id):
        with self._lock:
            return self._user(user_id)["last_synced_at"]

    def list_active_dates(self, user_id) -> Set:
        uid = int(user_id)
        with self._lock:
            return {day for (owner, day), row in self.daily_stats.items() if owner == uid and row["total_commits"] > 0}

    def upsert_daily_aggregates(self, user_id, batch) -> None:
        uid = int(user_id)
        with self._lock:
            self._user(uid)
            for aggregate in batch:
                row = aggregate.to_row()
                self.daily_stats[(uid, row["date"])] = row

    def upsert_repositories(self, user_id, batch) -> None:
        uid = int(user_id)
        with self._lock:
            self._user(uid)
            for repo in batch:
                self.repositories[(uid, int(repo["github_repo_id"]))] = dict(repo)

    def update_user_summary(self, user_id, summary, synced_at, expected_last_synced_at) -> bool:
        with self._lock:
            user = self._user(user_id)
            if user["last_synced_at"] != expected_last_synced_at:
                return False
            user.update({key: value for key, value in summary.to_row().items() if key in USER_SUMMARY_COLUMNS})
            user["last_synced_at"] = synced_at
            return True

    def get_user_summary(self, user_id) -> Optional[Dict[str, Any]]:
        with self._lock:
            user = self.users.get(int(user_id))
            return copy.deepcopy(user) if user is not None else None

    def list_daily_aggregates(self, user_id, start=None, end=None) -> List[Dict[str, Any]]:
        uid = int(user_id)
        with self._lock:
            rows = [
                copy.deepcopy(row)
                for (owner, day), row in self.daily_stats.items()
                if owner == uid and (start is None or day >= start) and (end is None or day <= end)
            ]
        return sorted(rows, key=lambda row: row["date"])
