from typing import Any, Dict, Optional, Tuple

from services.shared.metric_definitions import DAYS_PER_WEEK, LEVELS, SCORE_WEIGHTS, XP_WEIGHTS


def _count(value) -> int:
    """
    Coerce a counter to a non-negative int; missing counts score as zero
    """
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def compute_productivity_score(commits, prs, issues, reviews) -> int:
    """
    Compute the lifetime productivity score

    Args:
        commits (int): Commit count
        prs (int): Pull request count
        issues (int): Issue count
        reviews (int): Reviewed pull request count

    Returns:
        int score, unbounded
    """
    return (
        _count(commits) * SCORE_WEIGHTS["commits"]
        + _count(prs) * SCORE_WEIGHTS["prs"]
        + _count(issues) * SCORE_WEIGHTS["issues"]
        + _count(reviews) * SCORE_WEIGHTS["reviews"]
    )


def resolve_level(xp) -> Tuple[int, str]:
    """
    Map cumulative XP onto the level table

    Args:
        xp (int): Cumulative XP

    Returns:
        tuple (level, title)
    """
    xp = _count(xp)
    level, title, _required = LEVELS[0]
    for candidate_level, candidate_title, required in LEVELS:
        if xp >= required:
            level, title = candidate_level, candidate_title
        else:
            break
    return level, title


def compute_experience(commits, prs, current_streak, active_day_count) -> Tuple[int, int, str]:
    """
    Compute experience points and the resulting level

    The perfect-week term counts floor(active days / 7) over all time; it does
    not verify seven consecutive days

    Args:
        commits (int): Commit count
        prs (int): Pull request count
        current_streak (int): Current streak in days
        active_day_count (int): Days with at least one commit

    Returns:
        tuple (xp, level, level_title)
    """
    xp = (
        _count(commits) * XP_WEIGHTS["commit"]
        + _count(prs) * XP_WEIGHTS["pr"]
        + _count(current_streak) * XP_WEIGHTS["streak_day"]
        + (_count(active_day_count) // DAYS_PER_WEEK) * XP_WEIGHTS["perfect_week"]
    )
    level, title = resolve_level(xp)
    return xp, level, title


def level_progress(xp) -> int:
    """
    Percent progress from the current level threshold to the next one

    Args:
        xp (int): Cumulative XP

    Returns:
        int 0..100 (100 at the top level)
    """
    xp = _count(xp)
    for index, (_level, _title, required) in enumerate(LEVELS):
        if index + 1 >= len(LEVELS):
            return 100
        next_required = LEVELS[index + 1][2]
        if xp < next_required:
            span = next_required - required
            return min(100, int(round(100.0 * (xp - required) / span)))
    return 100


def next_milestone(xp) -> Optional[Dict[str, Any]]:
    """
    The next level above the current XP

    Args:
        xp (int): Cumulative XP

    Returns:
        dict with level, title, xp_required, xp_remaining; None at the top level
    """
    xp = _count(xp)
    for level, title, required in LEVELS:
        if xp < required:
            return {
                "level": level,
                "title": title,
                "xp_required": required,
                "xp_remaining": required - xp,
            }
    return None
