from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Iterable, Mapping, Optional

from services.shared.activity import DailyAggregate, active_dates, repositories_with_commits
from services.shared.scoring import compute_experience, compute_productivity_score
from services.shared.streaks import compute_streaks


@dataclass(frozen=True)
class SyncSummary:
    """
    Derived user fields produced by one sync, written in a single update
    """

    total_commits: int
    total_prs: int
    total_issues: int
    total_reviews: int
    total_contributions: int
    total_repos: int
    public_repos: int
    repos_with_commits: int
    days_with_activity: int
    active_day_count: int
    current_streak: int
    longest_streak: int
    productivity_score: int
    xp: int
    level: int
    level_title: str

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


def build_sync_summary(
    aggregates: Mapping[date, DailyAggregate],
    stored_active_dates: Optional[Iterable[date]],
    commit_total: Optional[int],
    pr_total: Optional[int],
    issue_total: Optional[int],
    review_total: Optional[int],
    repositories: Iterable[Mapping[str, Any]],
    today: date,
) -> SyncSummary:
    """
    Combine aggregates and provider totals into the user summary

    Args:
        aggregates (dict): date -> DailyAggregate from this sync
        stored_active_dates (iterable): Active dates already persisted for the user
        commit_total (int): Commit search total; falls back to the aggregated count when None
        pr_total (int): Pull request total or None when the query failed
        issue_total (int): Issue total or None
        review_total (int): Reviewed pull request total or None
        repositories (iterable): Repository snapshot rows
        today (date): Reference day for the current streak

    Returns:
        SyncSummary
    """
    aggregated_commits = sum(agg.total_commits for agg in aggregates.values())
    commits = max(int(commit_total or 0), aggregated_commits)
    prs = int(pr_total or 0)
    issues = int(issue_total or 0)
    reviews = int(review_total or 0)

    all_active = active_dates(aggregates) | set(stored_active_dates or ())
    current_streak, longest_streak = compute_streaks(all_active, today)
    xp, level, level_title = compute_experience(commits, prs, current_streak, len(all_active))

    repositories = list(repositories)

    return SyncSummary(
        total_commits=commits,
        total_prs=prs,
        total_issues=issues,
        total_reviews=reviews,
        total_contributions=commits + prs + issues + reviews,
        total_repos=len(repositories),
        public_repos=sum(1 for repo in repositories if not repo.get("is_private")),
        repos_with_commits=len(list(repositories_with_commits(aggregates))),
        days_with_activity=len(aggregates),
        active_day_count=len(all_active),
        current_streak=current_streak,
        longest_streak=longest_streak,
        productivity_score=compute_productivity_score(commits, prs, issues, reviews),
        xp=xp,
        level=level,
        level_title=level_title,
    )
