"""
Summary metric definitions, scoring weights and the level table

Single source of truth for the derived fields written to users
"""

# Productivity score weights (lifetime, uncapped)
SCORE_WEIGHTS = {
    "commits": 10,
    "prs": 25,
    "issues": 15,
    "reviews": 20,
}

# Experience weights
XP_WEIGHTS = {
    "commit": 10,
    "pr": 50,
    "streak_day": 5,
    "perfect_week": 200,
}

DAYS_PER_WEEK = 7

# (level, title, xp required), ascending by xp
LEVELS = (
    (1, "Newcomer", 0),
    (5, "Contributor", 500),
    (10, "Shipper", 2_000),
    (20, "Builder", 10_000),
    (30, "Architect", 25_000),
    (50, "Legend", 100_000),
    (100, "Immortal", 500_000),
)

METRIC_DEFINITIONS = {
    "total_commits": {
        "description": "Commits authored since the activity floor (provider search total)",
    },
    "total_prs": {
        "description": "Pull requests opened since the activity floor",
    },
    "total_issues": {
        "description": "Issues opened since the activity floor",
    },
    "total_reviews": {
        "description": "Pull requests reviewed since the activity floor",
    },
    "total_contributions": {
        "description": "Commits + pull requests + issues + reviews",
    },
    "current_streak": {
        "description": "Consecutive days with commits ending today or yesterday",
    },
    "longest_streak": {
        "description": "Longest run of consecutive days with commits",
    },
    "productivity_score": {
        "description": "commits x10 + PRs x25 + issues x15 + reviews x20 (uncapped)",
    },
    "xp": {
        "description": "commits x10 + PRs x50 + current streak x5 + 200 per 7 active days",
    },
}


def get_metric_description(metric_name):
    """
    Get description for a summary metric

    Args:
        metric_name (str): Metric key

    Returns:
        str description
    """
    return METRIC_DEFINITIONS.get(metric_name, {}).get("description", "")
