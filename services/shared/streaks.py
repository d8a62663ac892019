from datetime import date, timedelta
from typing import Iterable, Tuple


ONE_DAY = timedelta(days=1)


def compute_current_streak(sorted_desc, today) -> int:
    """
    Count consecutive active days ending at the most recent active date

    A most recent active date earlier than yesterday means the streak is broken

    Args:
        sorted_desc (list): De-duplicated active dates, newest first
        today (date): Reference day

    Returns:
        int current streak
    """
    if not sorted_desc:
        return 0

    yesterday = today - ONE_DAY
    most_recent = sorted_desc[0]
    if most_recent < yesterday:
        return 0

    streak = 0
    expected = most_recent
    for day in sorted_desc:
        if day != expected:
            break
        streak += 1
        expected = day - ONE_DAY
    return streak


def compute_longest_streak(sorted_desc) -> int:
    """
    Length of the longest run of day-by-day consecutive dates

    Args:
        sorted_desc (list): De-duplicated active dates, newest first

    Returns:
        int longest run
    """
    if not sorted_desc:
        return 0

    longest = 1
    run = 1
    for prev, curr in zip(sorted_desc, sorted_desc[1:]):
        if prev - curr == ONE_DAY:
            run += 1
        else:
            longest = max(longest, run)
            run = 1
    return max(longest, run)


def compute_streaks(active_dates: Iterable[date], today: date) -> Tuple[int, int]:
    """
    Compute (current, longest) streaks from the days with activity

    Args:
        active_dates (iterable): Dates with at least one commit; duplicates allowed
        today (date): Reference day in the same calendar the dates were keyed in

    Returns:
        tuple (current, longest), with longest >= current
    """
    sorted_desc = sorted(set(active_dates), reverse=True)
    if not sorted_desc:
        return 0, 0

    current = compute_current_streak(sorted_desc, today)
    longest = max(compute_longest_streak(sorted_desc), current)
    return current, longest
