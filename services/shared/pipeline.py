import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from redis.exceptions import RedisError

from services.shared import config as shared_config
from services.shared.activity import aggregate_events
from services.shared.caching import invalidate_summary
from services.shared.github_client import (
    FetchResult,
    GitHubAPIError,
    ProviderUnavailable,
    count_issues,
    count_pull_requests,
    count_reviews,
    fetch_commit_events,
    fetch_repositories,
    fetch_viewer,
)
from services.shared.locks import UserLockHeld, user_sync_lock
from services.shared.notifications import dispatch_post_sync_notifications
from services.shared.persistence.gateway import PersistenceFailure, UserNotFound
from services.shared.summary import SyncSummary, build_sync_summary


logger = logging.getLogger("pipeline")


class CooldownActive(RuntimeError):
    """
    Raised when the user synced less than SYNC_COOLDOWN_SECONDS ago
    """

    def __init__(self, user_id, retry_after_minutes):
        super().__init__(f"Sync cooldown active for user_id={user_id}; retry in {retry_after_minutes} min")
        self.user_id = user_id
        self.retry_after_minutes = retry_after_minutes


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def retry_after_minutes(remaining_seconds) -> int:
    """
    Whole minutes until a retry is allowed, never less than one
    """
    return max(1, int(math.ceil(float(remaining_seconds) / 60.0)))


def check_cooldown(user_id, last_synced_at, now) -> None:
    """
    Enforce the minimum interval between completed syncs

    Args:
        user_id (int): GitHub user id
        last_synced_at (datetime): Last completed sync or None
        now (datetime): Reference instant

    Raises:
        CooldownActive: When the window has not elapsed
    """
    last_synced_at = _as_utc(last_synced_at)
    if last_synced_at is None:
        return

    elapsed = (_as_utc(now) - last_synced_at).total_seconds()
    remaining = float(shared_config.SYNC_COOLDOWN_SECONDS) - elapsed
    if remaining > 0:
        raise CooldownActive(user_id, retry_after_minutes(remaining))


def _chunks(items: List[Any], size) -> Iterable[List[Any]]:
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _repository_snapshot(repo) -> Optional[Dict[str, Any]]:
    """
    Map a /user/repos payload onto the repositories columns

    Args:
        repo (dict): Repository payload

    Returns:
        dict row, or None when the payload has no id
    """
    repo_id = (repo or {}).get("id")
    if not repo_id:
        return None

    return {
        "github_repo_id": int(repo_id),
        "name": repo.get("name") or "",
        "full_name": repo.get("full_name") or repo.get("name") or "",
        "description": repo.get("description"),
        "homepage": repo.get("homepage") or None,
        "language": repo.get("language"),
        "stars": int(repo.get("stargazers_count") or 0),
        "forks": int(repo.get("forks_count") or 0),
        "watchers": int(repo.get("watchers_count") or 0),
        "open_issues": int(repo.get("open_issues_count") or 0),
        "is_fork": bool(repo.get("fork")),
        "is_private": bool(repo.get("private")),
        "is_archived": bool(repo.get("archived")),
        "github_created_at": repo.get("created_at"),
        "github_updated_at": repo.get("updated_at"),
        "github_pushed_at": repo.get("pushed_at"),
    }


def _fetch_activity(github_token, login, deadline) -> Dict[str, FetchResult]:
    """
    Run every provider query for one sync, in order

    Args:
        github_token (str): OAuth token
        login (str): GitHub login of the token owner
        deadline (float): time.monotonic() budget end

    Returns:
        dict query name -> FetchResult

    Raises:
        PermissionError: When the token is rejected mid-sync
        ProviderUnavailable: When every query failed and nothing was collected
    """
    since_date = shared_config.ACTIVITY_SINCE_DATE

    repositories = fetch_repositories(github_token, deadline=deadline)
    repo_languages = {
        repo.get("id"): repo.get("language")
        for repo in repositories.items
        if repo and repo.get("id") is not None
    }

    results = {
        "repositories": repositories,
        "commits": fetch_commit_events(
            github_token,
            login,
            since_date,
            repo_languages=repo_languages,
            deadline=deadline,
        ),
        "prs": count_pull_requests(github_token, login, since_date, deadline=deadline),
        "issues": count_issues(github_token, login, since_date, deadline=deadline),
        "reviews": count_reviews(github_token, login, since_date, deadline=deadline),
    }

    if all(result.error and not result.items and not result.total_count for result in results.values()):
        markers = ", ".join(f"{name}:{result.error}" for name, result in results.items())
        raise ProviderUnavailable(f"All provider queries failed ({markers})")

    return results


def _fetch_errors(results: Dict[str, FetchResult]) -> List[str]:
    return [f"{name}:{result.error}" for name, result in results.items() if result.error]


def _count_or_none(result: FetchResult) -> Optional[int]:
    if result.error and not result.total_count:
        return None
    return result.total_count


def _persist(gateway, user_id, aggregates, repositories) -> None:
    daily_rows = [aggregates[day] for day in sorted(aggregates)]
    for batch in _chunks(daily_rows, shared_config.PERSIST_BATCH_SIZE):
        gateway.upsert_daily_aggregates(user_id, batch)

    for batch in _chunks(repositories, shared_config.PERSIST_BATCH_SIZE):
        gateway.upsert_repositories(user_id, batch)


def _stats(summary: SyncSummary, errors: List[str]) -> Dict[str, Any]:
    return {
        "total_commits": summary.total_commits,
        "total_prs": summary.total_prs,
        "total_issues": summary.total_issues,
        "total_reviews": summary.total_reviews,
        "total_contributions": summary.total_contributions,
        "repos_synced": summary.total_repos,
        "repos_with_commits": summary.repos_with_commits,
        "days_with_activity": summary.days_with_activity,
        "productivity_score": summary.productivity_score,
        "current_streak": summary.current_streak,
        "longest_streak": summary.longest_streak,
        "xp": summary.xp,
        "level": summary.level,
        "level_title": summary.level_title,
        "partial": bool(errors),
        "errors": errors,
    }


def _rate_limited(user_id, minutes) -> Dict[str, Any]:
    return {"status": "rate_limited", "user_id": user_id, "retry_after_minutes": int(minutes)}


def _error(user_id, message, reason) -> Dict[str, Any]:
    return {"status": "error", "user_id": user_id, "error": str(message), "reason": reason}


def _run_locked_sync(user_id, github_token, gateway, now) -> Dict[str, Any]:
    log_extra = {"user_id": user_id}

    try:
        expected_last_synced_at = gateway.get_user_cooldown_state(user_id)
        check_cooldown(user_id, expected_last_synced_at, now)
    except CooldownActive as exc:
        return _rate_limited(user_id, exc.retry_after_minutes)

    try:
        viewer = fetch_viewer(github_token)
    except PermissionError:
        logger.warning("sync: github token rejected", extra=log_extra)
        return _error(user_id, "github_token_invalid", "token_invalid")
    except GitHubAPIError as exc:
        logger.warning("sync: viewer lookup failed error=%s", exc.error_marker, extra=log_extra)
        return _error(user_id, f"viewer_lookup_failed: {exc.error_marker}", "provider")

    if int(viewer["id"]) != int(user_id):
        logger.warning("sync: token owner mismatch viewer_id=%s", viewer["id"], extra=log_extra)
        return _error(user_id, "github token does not belong to user", "token_invalid")

    login = viewer["login"]
    deadline = time.monotonic() + float(shared_config.SYNC_WALL_CLOCK_BUDGET_SECONDS)

    try:
        results = _fetch_activity(github_token, login, deadline)
    except PermissionError:
        logger.warning("sync: github token rejected mid-sync", extra=log_extra)
        return _error(user_id, "github_token_invalid", "token_invalid")
    except ProviderUnavailable as exc:
        logger.error("sync: provider unavailable error=%s", exc, extra=log_extra)
        return _error(user_id, str(exc), "provider")

    errors = _fetch_errors(results)
    if errors:
        logger.warning("sync: continuing with partial data errors=%s", errors, extra=log_extra)

    repositories = [
        snapshot
        for snapshot in (_repository_snapshot(repo) for repo in results["repositories"].items)
        if snapshot is not None
    ]

    try:
        stored_active_dates = gateway.list_active_dates(user_id)
        aggregates = aggregate_events(results["commits"].items)
        summary = build_sync_summary(
            aggregates,
            stored_active_dates,
            commit_total=_count_or_none(results["commits"]),
            pr_total=_count_or_none(results["prs"]),
            issue_total=_count_or_none(results["issues"]),
            review_total=_count_or_none(results["reviews"]),
            repositories=repositories,
            today=now.date(),
        )
        _persist(gateway, user_id, aggregates, repositories)
        applied = gateway.update_user_summary(
            user_id,
            summary,
            synced_at=now,
            expected_last_synced_at=expected_last_synced_at,
        )
    except PersistenceFailure as exc:
        logger.exception("sync: persistence failed", extra=log_extra)
        return _error(user_id, f"persistence_failure: {exc}", "persistence")

    if not applied:
        logger.info("sync: another sync committed first", extra=log_extra)
        return _rate_limited(user_id, retry_after_minutes(shared_config.SYNC_COOLDOWN_SECONDS))

    invalidate_summary(user_id)
    dispatch_post_sync_notifications(user_id)

    stats = _stats(summary, errors)
    logger.info(
        "sync: completed commits=%s days=%s streak=%s/%s score=%s partial=%s",
        stats["total_commits"],
        stats["days_with_activity"],
        stats["current_streak"],
        stats["longest_streak"],
        stats["productivity_score"],
        stats["partial"],
        extra=log_extra,
    )
    return {"status": "ok", "user_id": user_id, "stats": stats}


def sync_user_activity(user_id, github_token, gateway, now=None) -> Dict[str, Any]:
    """
    Synchronize one user's GitHub activity and recompute derived metrics

    Args:
        user_id (int): GitHub user id of the account being synced
        github_token (str): OAuth token owned by that user
        gateway (PersistenceGateway): Storage
        now (datetime): Reference instant (defaults to current UTC time)

    Returns:
        dict outcome: status "ok" with stats, "rate_limited" with
        retry_after_minutes, or "error" with an error message
    """
    now = _as_utc(now) or datetime.now(timezone.utc)
    log_extra = {"user_id": user_id}

    try:
        check_cooldown(user_id, gateway.get_user_cooldown_state(user_id), now)
    except CooldownActive as exc:
        logger.info("sync: cooldown active retry_after_minutes=%s", exc.retry_after_minutes, extra=log_extra)
        return _rate_limited(user_id, exc.retry_after_minutes)
    except UserNotFound as exc:
        return _error(user_id, str(exc), "user_not_found")
    except PersistenceFailure as exc:
        logger.exception("sync: failed to read cooldown state", extra=log_extra)
        return _error(user_id, f"persistence_failure: {exc}", "persistence")

    started = time.monotonic()
    try:
        with user_sync_lock(
            user_id,
            ttl_seconds=shared_config.USER_LOCK_TTL_SECONDS,
            wait_timeout_seconds=shared_config.USER_LOCK_WAIT_TIMEOUT_SECONDS,
        ):
            return _run_locked_sync(user_id, github_token, gateway, now)
    except UserLockHeld:
        logger.info("sync: another sync holds the user lock", extra=log_extra)
        return _rate_limited(user_id, retry_after_minutes(shared_config.SYNC_COOLDOWN_SECONDS))
    except UserNotFound as exc:
        logger.warning("sync: user disappeared during sync", extra=log_extra)
        return _error(user_id, str(exc), "user_not_found")
    except (PersistenceFailure, RedisError) as exc:
        logger.exception("sync: failed", extra=log_extra)
        return _error(user_id, f"{type(exc).__name__}: {exc}", "internal")
    except Exception as exc:
        logger.exception("sync: unexpected error", extra=log_extra)
        return _error(user_id, f"unexpected_error: {type(exc).__name__}", "internal")
    finally:
        logger.debug("sync: finished duration_seconds=%s", round(time.monotonic() - started, 3), extra=log_extra)
