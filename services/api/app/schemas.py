from datetime import date
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, SecretStr


class SyncRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    github_token: Optional[SecretStr] = None


class SyncStats(BaseModel):
    total_commits: int
    total_prs: int
    total_issues: int
    total_reviews: int
    total_contributions: int
    repos_synced: int
    repos_with_commits: int
    days_with_activity: int
    productivity_score: int
    current_streak: int
    longest_streak: int
    xp: int
    level: int
    level_title: str
    partial: bool
    errors: List[str] = Field(default_factory=list)


class SyncResponse(BaseModel):
    status: Literal["ok"]
    user_id: int
    stats: SyncStats


class MetricEntry(BaseModel):
    value: int
    description: str


class NextMilestone(BaseModel):
    level: int
    title: str
    xp_required: int
    xp_remaining: int


class SummaryResponse(BaseModel):
    user_id: int
    github_login: str
    last_synced_at: Optional[str] = None
    auto_sync: bool = True
    metrics: Dict[str, MetricEntry]
    xp: int
    level: int
    level_title: str
    level_progress: int = Field(..., ge=0, le=100)
    next_milestone: Optional[NextMilestone] = None


class DailyAggregateRow(BaseModel):
    date: date
    total_commits: int
    commits_by_hour: List[int] = Field(..., min_length=24, max_length=24)
    active_hours: int
    repositories: List[str]
    unique_repos: int
    languages: Dict[str, int]
    primary_language: Optional[str] = None
    day_score: int
    is_weekend: bool


class DailyAggregatesResponse(BaseModel):
    user_id: int
    start: Optional[date] = None
    end: Optional[date] = None
    days: List[DailyAggregateRow]
