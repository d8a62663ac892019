import json
import logging
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from services.shared.database import db_session
from services.shared.persistence.gateway import (
    USER_SUMMARY_COLUMNS,
    PersistenceFailure,
    PersistenceGateway,
    UserNotFound,
)


logger = logging.getLogger("persistence")

DAILY_COLUMNS = (
    "date",
    "total_commits",
    "commits_by_hour",
    "active_hours",
    "repositories",
    "unique_repos",
    "languages",
    "primary_language",
    "day_score",
    "is_weekend",
)

_UPSERT_DAILY_SQL = text(
    "INSERT INTO daily_stats (user_id, date, total_commits, commits_by_hour, active_hours, repositories,"
    " unique_repos, languages, primary_language, day_score, is_weekend, updated_at)"
    " VALUES (:user_id, :date, :total_commits, CAST(:commits_by_hour AS JSONB), :active_hours,"
    " CAST(:repositories AS JSONB), :unique_repos, CAST(:languages AS JSONB), :primary_language,"
    " :day_score, :is_weekend, NOW())"
    " ON CONFLICT (user_id, date) DO UPDATE SET"
    " total_commits=EXCLUDED.total_commits,"
    " commits_by_hour=EXCLUDED.commits_by_hour,"
    " active_hours=EXCLUDED.active_hours,"
    " repositories=EXCLUDED.repositories,"
    " unique_repos=EXCLUDED.unique_repos,"
    " languages=EXCLUDED.languages,"
    " primary_language=EXCLUDED.primary_language,"
    " day_score=EXCLUDED.day_score,"
    " is_weekend=EXCLUDED.is_weekend,"
    " updated_at=NOW()"
)

_UPSERT_REPOSITORY_SQL = text(
    "INSERT INTO repositories (user_id, github_repo_id, name, full_name, description, homepage, language,"
    " stars, forks, watchers, open_issues, is_fork, is_private, is_archived,"
    " github_created_at, github_updated_at, github_pushed_at, updated_at)"
    " VALUES (:user_id, :github_repo_id, :name, :full_name, :description, :homepage, :language,"
    " :stars, :forks, :watchers, :open_issues, :is_fork, :is_private, :is_archived,"
    " :github_created_at, :github_updated_at, :github_pushed_at, NOW())"
    " ON CONFLICT (user_id, github_repo_id) DO UPDATE SET"
    " name=EXCLUDED.name, full_name=EXCLUDED.full_name, description=EXCLUDED.description,"
    " homepage=EXCLUDED.homepage, language=EXCLUDED.language, stars=EXCLUDED.stars,"
    " forks=EXCLUDED.forks, watchers=EXCLUDED.watchers, open_issues=EXCLUDED.open_issues,"
    " is_fork=EXCLUDED.is_fork, is_private=EXCLUDED.is_private, is_archived=EXCLUDED.is_archived,"
    " github_created_at=EXCLUDED.github_created_at, github_updated_at=EXCLUDED.github_updated_at,"
    " github_pushed_at=EXCLUDED.github_pushed_at, updated_at=NOW()"
)

_UPDATE_SUMMARY_SQL = text(
    "UPDATE users SET"
    " total_commits=:total_commits, total_prs=:total_prs, total_issues=:total_issues,"
    " total_reviews=:total_reviews, total_contributions=:total_contributions,"
    " total_repos=:total_repos, public_repos=:public_repos,"
    " current_streak=:current_streak, longest_streak=:longest_streak,"
    " productivity_score=:productivity_score, xp=:xp, level=:level, level_title=:level_title,"
    " last_synced_at=:synced_at, updated_at=NOW()"
    " WHERE github_user_id=:user_id"
    " AND last_synced_at IS NOT DISTINCT FROM CAST(:expected_last_synced_at AS TIMESTAMPTZ)"
)

_REPOSITORY_FIELDS = (
    "github_repo_id",
    "name",
    "full_name",
    "description",
    "homepage",
    "language",
    "stars",
    "forks",
    "watchers",
    "open_issues",
    "is_fork",
    "is_private",
    "is_archived",
    "github_created_at",
    "github_updated_at",
    "github_pushed_at",
)


class SqlPersistenceGateway(PersistenceGateway):
    """
    PostgreSQL gateway built on SQLAlchemy Core text() statements

    Every SQLAlchemyError surfaces as PersistenceFailure; a failed batch rolls
    back as a unit
    """

    def get_user_cooldown_state(self, user_id):
        try:
            with db_session() as session:
                row = session.execute(
                    text("SELECT last_synced_at FROM users WHERE github_user_id = :u"),
                    {"u": int(user_id)},
                ).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to read cooldown state: {exc}") from exc

        if row is None:
            raise UserNotFound(user_id)
        return row[0]

    def list_active_dates(self, user_id) -> Set:
        try:
            with db_session() as session:
                rows = session.execute(
                    text("SELECT date FROM daily_stats WHERE user_id = :u AND total_commits > 0"),
                    {"u": int(user_id)},
                ).fetchall()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to read active dates: {exc}") from exc
        return {row[0] for row in rows}

    def upsert_daily_aggregates(self, user_id, batch) -> None:
        params = []
        for aggregate in batch:
            row = aggregate.to_row()
            row["user_id"] = int(user_id)
            row["commits_by_hour"] = json.dumps(row["commits_by_hour"])
            row["repositories"] = json.dumps(row["repositories"])
            row["languages"] = json.dumps(row["languages"], sort_keys=True)
            params.append(row)

        if not params:
            return

        try:
            with db_session() as session:
                session.execute(_UPSERT_DAILY_SQL, params)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to upsert daily aggregates: {exc}") from exc

        logger.debug("Upserted %s daily rows", len(params), extra={"user_id": user_id})

    def upsert_repositories(self, user_id, batch) -> None:
        params = []
        for repo in batch:
            row = {field: repo.get(field) for field in _REPOSITORY_FIELDS}
            row["user_id"] = int(user_id)
            params.append(row)

        if not params:
            return

        try:
            with db_session() as session:
                session.execute(_UPSERT_REPOSITORY_SQL, params)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to upsert repositories: {exc}") from exc

    def update_user_summary(self, user_id, summary, synced_at, expected_last_synced_at) -> bool:
        params = {key: value for key, value in summary.to_row().items() if key in USER_SUMMARY_COLUMNS}
        params.update(
            {
                "user_id": int(user_id),
                "synced_at": synced_at,
                "expected_last_synced_at": expected_last_synced_at,
            }
        )

        try:
            with db_session() as session:
                result = session.execute(_UPDATE_SUMMARY_SQL, params)
                updated = int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to update user summary: {exc}") from exc

        return updated == 1

    def get_user_summary(self, user_id) -> Optional[Dict[str, Any]]:
        try:
            with db_session() as session:
                row = session.execute(
                    text(f"SELECT {', '.join(USER_SUMMARY_COLUMNS)} FROM users WHERE github_user_id = :u"),
                    {"u": int(user_id)},
                ).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to read user summary: {exc}") from exc

        if row is None:
            return None
        return dict(zip(USER_SUMMARY_COLUMNS, row))

    def list_daily_aggregates(self, user_id, start=None, end=None) -> List[Dict[str, Any]]:
        clauses = ["user_id = :u"]
        params: Dict[str, Any] = {"u": int(user_id)}
        if start is not None:
            clauses.append("date >= :start")
            params["start"] = start
        if end is not None:
            clauses.append("date <= :end")
            params["end"] = end

        try:
            with db_session() as session:
                rows = session.execute(
                    text(f"SELECT {', '.join(DAILY_COLUMNS)} FROM daily_stats WHERE {' AND '.join(clauses)} ORDER BY date"),
                    params,
                ).fetchall()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to read daily aggregates: {exc}") from exc

        return [dict(zip(DAILY_COLUMNS, row)) for row in rows]
