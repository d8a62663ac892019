"""
Fold raw provider activity into one aggregate per calendar day

Dates and hours are read from each timestamp's own UTC offset (the author's
local clock as GitHub reports it), never normalized to UTC. The streak
calculator keys days the same way; the two must agree or streaks misalign
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


logger = logging.getLogger("activity")

EVENT_KINDS = frozenset({"commit", "pr", "issue", "review"})

# Points per commit in the per-day score (uncapped)
DAY_SCORE_COMMIT_WEIGHT = 10

HOURS_PER_DAY = 24
UNKNOWN_REPOSITORY = "unknown"


class MalformedEventData(ValueError):
    """
    Raised when a single event cannot be dated or classified
    """


@dataclass(frozen=True)
class RawActivityEvent:
    timestamp: Any
    kind: str
    repository_id: Optional[int] = None
    repository_full_name: Optional[str] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class DailyAggregate:
    day: date
    total_commits: int
    commits_by_hour: Tuple[int, ...]
    repositories: Tuple[str, ...]
    # (language, count) pairs sorted by language
    languages: Tuple[Tuple[str, int], ...] = ()
    day_score: int = 0

    @property
    def active_hours(self) -> int:
        return sum(1 for count in self.commits_by_hour if count > 0)

    @property
    def unique_repos(self) -> int:
        return len(self.repositories)

    @property
    def primary_language(self) -> Optional[str]:
        if not self.languages:
            return None
        return sorted(self.languages, key=lambda kv: (-kv[1], kv[0]))[0][0]

    @property
    def is_weekend(self) -> bool:
        return self.day.weekday() >= 5

    def to_row(self) -> Dict[str, Any]:
        """
        Flatten into the column mapping used by persistence gateways

        Returns:
            dict keyed by daily_stats column names
        """
        return {
            "date": self.day,
            "total_commits": self.total_commits,
            "commits_by_hour": list(self.commits_by_hour),
            "active_hours": self.active_hours,
            "repositories": list(self.repositories),
            "unique_repos": self.unique_repos,
            "languages": dict(self.languages),
            "primary_language": self.primary_language,
            "day_score": self.day_score,
            "is_weekend": self.is_weekend,
        }


def parse_event_timestamp(value) -> datetime:
    """
    Parse a provider timestamp, keeping its own UTC offset

    Args:
        value: ISO-8601 string (``Z`` or ``+hh:mm`` suffix) or datetime

    Returns:
        datetime (aware when the input carried an offset)

    Raises:
        MalformedEventData: When the value is missing or unparseable
    """
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        raise MalformedEventData(f"event timestamp missing or not a string: {value!r}")

    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise MalformedEventData(f"event timestamp unparseable: {value!r}") from exc


def event_day_and_hour(event) -> Tuple[date, int]:
    """
    Resolve the calendar day and hour of an event from its local components

    Args:
        event (RawActivityEvent): Event

    Returns:
        tuple (date, hour)

    Raises:
        MalformedEventData: When the event cannot be dated or its kind is unknown
    """
    if event.kind not in EVENT_KINDS:
        raise MalformedEventData(f"unknown event kind: {event.kind!r}")
    dt = parse_event_timestamp(event.timestamp)
    return dt.date(), dt.hour


def _repository_label(event) -> str:
    if event.repository_full_name:
        return str(event.repository_full_name)
    if event.repository_id:
        return str(event.repository_id)
    return UNKNOWN_REPOSITORY


def aggregate_events(events) -> Dict[date, DailyAggregate]:
    """
    Fold activity events into per-day aggregates

    Malformed events are skipped with a warning; the fold does not depend on
    event order

    Args:
        events (iterable): RawActivityEvent items

    Returns:
        dict mapping date -> DailyAggregate
    """
    buckets: Dict[date, Dict[str, Any]] = {}
    skipped = 0

    for event in events:
        try:
            day, hour = event_day_and_hour(event)
        except MalformedEventData as exc:
            skipped += 1
            logger.warning("aggregate_events: skipping malformed event: %s", exc)
            continue

        bucket = buckets.get(day)
        if bucket is None:
            bucket = {
                "total_commits": 0,
                "hours": [0] * HOURS_PER_DAY,
                "repositories": set(),
                "languages": {},
            }
            buckets[day] = bucket

        if event.kind == "commit":
            bucket["total_commits"] += 1
        bucket["hours"][hour] += 1
        bucket["repositories"].add(_repository_label(event))
        if event.language:
            languages = bucket["languages"]
            languages[event.language] = languages.get(event.language, 0) + 1

    if skipped:
        logger.info("aggregate_events: skipped %s malformed events", skipped)

    return {
        day: DailyAggregate(
            day=day,
            total_commits=bucket["total_commits"],
            commits_by_hour=tuple(bucket["hours"]),
            repositories=tuple(sorted(bucket["repositories"])),
            languages=tuple(sorted(bucket["languages"].items())),
            day_score=bucket["total_commits"] * DAY_SCORE_COMMIT_WEIGHT,
        )
        for day, bucket in buckets.items()
    }


def active_dates(aggregates) -> set:
    """
    Dates with at least one commit

    Args:
        aggregates (dict): date -> DailyAggregate

    Returns:
        set of date
    """
    return {day for day, agg in aggregates.items() if agg.total_commits > 0}


def commit_events_from_search_items(items, repo_languages=None) -> List[RawActivityEvent]:
    """
    Convert commit search items into activity events

    The commit search payload rarely carries a repository language, so a
    missing one is filled from the user's repository snapshots

    Args:
        items (iterable): Items from GET /search/commits
        repo_languages (Mapping): github_repo_id -> language

    Returns:
        list of RawActivityEvent
    """
    repo_languages: Mapping[int, Optional[str]] = repo_languages or {}
    events: List[RawActivityEvent] = []
    for item in items:
        commit = (item or {}).get("commit") or {}
        timestamp = ((commit.get("author") or {}).get("date")
                     or (commit.get("committer") or {}).get("date"))
        repo = (item or {}).get("repository") or {}
        repo_id = repo.get("id")
        language = repo.get("language") or (repo_languages.get(repo_id) if repo_id is not None else None)
        events.append(
            RawActivityEvent(
                timestamp=timestamp,
                kind="commit",
                repository_id=repo_id,
                repository_full_name=repo.get("full_name"),
                language=language,
            )
        )
    return events


def repositories_with_commits(aggregates: Mapping[date, DailyAggregate]) -> Iterable[str]:
    names = set()
    for agg in aggregates.values():
        if agg.total_commits > 0:
            names.update(agg.repositories)
    return sorted(names)
