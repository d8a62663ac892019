import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from redis.exceptions import RedisError

from services.shared.activity import commit_events_from_search_items
from services.shared.config import (
    GH_BACKOFF_BASE_SECONDS,
    GH_BACKOFF_CAP_SECONDS,
    GH_MAX_PAGES,
    GH_MAX_RETRIES,
    GH_PAGE_DELAY_SECONDS,
    GH_PAGE_SIZE,
    GH_RATE_LIMIT_SLEEP_SECONDS,
    GH_REPO_MAX_PAGES,
)
from services.shared.throttle import ThrottleUnavailable, send_github_request

logger = logging.getLogger("github_client")

# GitHub search never returns items past the 1000th result
SEARCH_RESULT_CAP = 1000

REPO_AFFILIATION = "owner,collaborator,organization_member"


class GitHubAPIError(RuntimeError):
    """
    Raised when a GitHub REST call fails in a way the caller should see

    Attributes:
        status_code (int): HTTP status, when a response was received
        query (str): Best-effort label for the query being paginated
    """

    marker = "provider_error"

    def __init__(self, message, status_code=None, query=None):
        super().__init__(message)
        self.status_code = status_code
        self.query = query

    @property
    def error_marker(self) -> str:
        if self.status_code and type(self) is GitHubAPIError:
            return f"http_{self.status_code}"
        return self.marker


class ProviderUnavailable(GitHubAPIError):
    """
    5xx responses, timeouts and connection failures that outlived the retry budget
    """

    marker = "provider_unavailable"


class ProviderRateLimited(GitHubAPIError):
    """
    Primary or secondary rate limit still in force after the fixed backoff
    """

    marker = "rate_limited"


class DeadlineExceeded(GitHubAPIError):
    """
    The sync wall-clock budget ran out before the query could finish
    """

    marker = "deadline_exceeded"


@dataclass(frozen=True)
class FetchResult:
    """
    Items collected by one provider query plus an optional error marker

    A result carrying an error is partial but valid: everything collected
    before the failure is kept
    """

    items: List[Any] = field(default_factory=list)
    total_count: int = 0
    error: Optional[str] = None
    pages: int = 0

    @property
    def is_partial(self) -> bool:
        return self.error is not None


def _compute_backoff_seconds(attempt):
    base = max(0, int(GH_BACKOFF_BASE_SECONDS))
    cap = max(0, int(GH_BACKOFF_CAP_SECONDS))

    if base <= 0:
        return 0.0

    wait = float(base) * (2.0 ** float(max(0, int(attempt)))) + random.uniform(0.0, 1.0)
    if cap > 0:
        return min(float(cap), wait)
    return wait


def _is_rate_limited(response) -> bool:
    """
    Distinguish rate limiting from other 403s (SSO enforcement, blocked repos)

    Args:
        response (httpx.Response): Response

    Returns:
        bool
    """
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("X-RateLimit-Remaining") == "0":
        return True
    if response.headers.get("Retry-After"):
        return True
    try:
        body = response.text or ""
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        body = ""
    return "rate limit" in body.lower()


def _ensure_time_left(deadline, sleep_seconds, query_label, cause=None):
    if deadline is None:
        return
    if time.monotonic() + float(sleep_seconds) >= deadline:
        raise DeadlineExceeded(
            f"Wall-clock budget exhausted before retry ({cause or 'rate limited'})",
            query=query_label,
        )


def _get_json(github_token, path, params, query_label, deadline=None):
    """
    GET one page with the retry policy for a single request

    Rate limits sleep GH_RATE_LIMIT_SLEEP_SECONDS and retry once. Unavailable
    responses retry up to GH_MAX_RETRIES with exponential backoff. Anything
    else fails immediately, and so does a retry whose sleep would cross the
    deadline

    Args:
        github_token (str): OAuth token
        path (str): API path
        params (dict): Query parameters
        query_label (str): Label used in logs and errors
        deadline (float): time.monotonic() instant after which no retry sleeps

    Returns:
        Parsed JSON body

    Raises:
        ProviderRateLimited, ProviderUnavailable, DeadlineExceeded, GitHubAPIError
        PermissionError: On 401
    """
    max_retries = max(0, int(GH_MAX_RETRIES))
    attempt = 0
    rate_limit_retried = False

    while True:
        try:
            response = send_github_request(github_token, path, params=params)
        except httpx.TransportError as exc:
            error = ProviderUnavailable(f"{type(exc).__name__}: {exc}", query=query_label)
        except TimeoutError as exc:
            raise ProviderRateLimited(f"GitHub throttle permit unavailable: {exc}", query=query_label) from exc
        except (ThrottleUnavailable, RedisError) as exc:
            raise ProviderUnavailable(f"GitHub throttle unavailable: {exc}", query=query_label) from exc
        else:
            if _is_rate_limited(response):
                if rate_limit_retried:
                    raise ProviderRateLimited(
                        "GitHub rate limit persisted after backoff",
                        status_code=response.status_code,
                        query=query_label,
                    )
                _ensure_time_left(deadline, GH_RATE_LIMIT_SLEEP_SECONDS, query_label)
                rate_limit_retried = True
                logger.warning(
                    "github_client: rate limited query=%s status=%s; sleeping %ss then retrying once",
                    query_label,
                    response.status_code,
                    GH_RATE_LIMIT_SLEEP_SECONDS,
                )
                time.sleep(GH_RATE_LIMIT_SLEEP_SECONDS)
                continue

            if response.status_code >= 500:
                error = ProviderUnavailable(
                    f"GitHub HTTP {response.status_code}",
                    status_code=response.status_code,
                    query=query_label,
                )
            elif response.status_code >= 400:
                raise GitHubAPIError(
                    f"GitHub HTTP {response.status_code}",
                    status_code=response.status_code,
                    query=query_label,
                )
            else:
                try:
                    return response.json()
                except ValueError as exc:
                    raise GitHubAPIError("GitHub returned malformed JSON", query=query_label) from exc

        if attempt >= max_retries:
            raise error

        wait_seconds = _compute_backoff_seconds(attempt)
        _ensure_time_left(deadline, wait_seconds, query_label, cause=error)
        logger.warning(
            "github_client: provider unavailable query=%s attempt=%s/%s retry_in=%.2fs error=%s",
            query_label,
            attempt + 1,
            max_retries + 1,
            wait_seconds,
            error,
        )
        time.sleep(wait_seconds)
        attempt += 1


def _search_page(payload) -> Tuple[List[Any], Optional[int]]:
    payload = payload or {}
    return list(payload.get("items") or []), int(payload.get("total_count") or 0)


def _list_page(payload) -> Tuple[List[Any], Optional[int]]:
    return list(payload or []), None


def paginate(
    github_token,
    path,
    params,
    query_label,
    extract_page: Callable[[Any], Tuple[List[Any], Optional[int]]],
    max_pages=None,
    per_page=None,
    deadline=None,
) -> FetchResult:
    """
    Walk numbered pages until a short page, the page ceiling or the deadline

    Pages are requested one at a time. A failed page ends the walk and the
    items collected so far are returned with an error marker

    Args:
        github_token (str): OAuth token
        path (str): API path
        params (dict): Query parameters other than per_page/page
        query_label (str): Label used in logs
        extract_page (callable): payload -> (items, total_count or None)
        max_pages (int): Absolute page ceiling (defaults to GH_MAX_PAGES)
        per_page (int): Page size requested (defaults to GH_PAGE_SIZE)
        deadline (float): time.monotonic() instant after which no page is requested

    Returns:
        FetchResult
    """
    max_pages = GH_MAX_PAGES if max_pages is None else max_pages
    per_page = GH_PAGE_SIZE if per_page is None else per_page

    items: List[Any] = []
    total_count = None
    error = None
    pages = 0

    for page in range(1, max(1, int(max_pages)) + 1):
        if deadline is not None and time.monotonic() >= deadline:
            error = "deadline_exceeded"
            logger.warning("github_client: wall-clock budget exhausted query=%s pages=%s", query_label, pages)
            break

        if page > 1 and GH_PAGE_DELAY_SECONDS > 0:
            time.sleep(GH_PAGE_DELAY_SECONDS)

        try:
            payload = _get_json(
                github_token,
                path,
                {**params, "per_page": per_page, "page": page},
                query_label,
                deadline=deadline,
            )
        except GitHubAPIError as exc:
            error = exc.error_marker
            logger.warning(
                "github_client: pagination aborted query=%s page=%s collected=%s error=%s",
                query_label,
                page,
                len(items),
                exc,
            )
            break

        page_items, page_total = extract_page(payload)
        pages += 1
        if total_count is None and page_total is not None:
            total_count = page_total
        items.extend(page_items)

        if len(page_items) < per_page:
            break
        if total_count is not None and len(items) >= total_count:
            break
    else:
        logger.info("github_client: page ceiling reached query=%s pages=%s", query_label, pages)

    return FetchResult(
        items=items,
        total_count=total_count if total_count is not None else len(items),
        error=error,
        pages=pages,
    )


def fetch_viewer(github_token) -> Dict[str, Any]:
    """
    Resolve the authenticated user

    Args:
        github_token (str): OAuth token

    Returns:
        dict with at least id and login

    Raises:
        PermissionError: When the token is rejected
        GitHubAPIError: When the profile cannot be read
    """
    viewer = _get_json(github_token, "/user", {}, "viewer") or {}
    if not viewer.get("id") or not viewer.get("login"):
        raise GitHubAPIError("GitHub /user response missing id or login", query="viewer")
    return viewer


def fetch_commit_events(github_token, login, since_date, repo_languages=None, deadline=None) -> FetchResult:
    """
    Collect commit events authored by a user since a date floor

    Args:
        github_token (str): OAuth token
        login (str): GitHub login
        since_date (date): Committer-date floor
        repo_languages (dict): github_repo_id -> language, used when the search item has none
        deadline (float): time.monotonic() budget end

    Returns:
        FetchResult whose items are RawActivityEvent and whose total_count is
        the search total (may exceed the number of items)
    """
    max_pages = min(int(GH_MAX_PAGES), math.ceil(SEARCH_RESULT_CAP / max(1, int(GH_PAGE_SIZE))))
    result = paginate(
        github_token,
        "/search/commits",
        {
            "q": f"author:{login} committer-date:>={since_date.isoformat()}",
            "sort": "committer-date",
            "order": "desc",
        },
        "commits",
        _search_page,
        max_pages=max_pages,
        deadline=deadline,
    )
    events = commit_events_from_search_items(result.items, repo_languages)
    return FetchResult(items=events, total_count=result.total_count, error=result.error, pages=result.pages)


def _search_total(github_token, query, query_label, deadline=None) -> FetchResult:
    if deadline is not None and time.monotonic() >= deadline:
        logger.warning("github_client: wall-clock budget exhausted before count query=%s", query_label)
        return FetchResult(error=DeadlineExceeded.marker)

    try:
        payload = _get_json(
            github_token,
            "/search/issues",
            {"q": query, "per_page": 1},
            query_label,
            deadline=deadline,
        )
    except GitHubAPIError as exc:
        logger.warning("github_client: count query failed query=%s error=%s", query_label, exc)
        return FetchResult(error=exc.error_marker)
    _items, total = _search_page(payload)
    return FetchResult(total_count=total or 0, pages=1)


def count_pull_requests(github_token, login, since_date, deadline=None) -> FetchResult:
    return _search_total(
        github_token,
        f"author:{login} type:pr created:>={since_date.isoformat()}",
        "prs",
        deadline=deadline,
    )


def count_issues(github_token, login, since_date, deadline=None) -> FetchResult:
    return _search_total(
        github_token,
        f"author:{login} type:issue created:>={since_date.isoformat()}",
        "issues",
        deadline=deadline,
    )


def count_reviews(github_token, login, since_date, deadline=None) -> FetchResult:
    return _search_total(
        github_token,
        f"reviewed-by:{login} type:pr created:>={since_date.isoformat()}",
        "reviews",
        deadline=deadline,
    )


def fetch_repositories(github_token, deadline=None) -> FetchResult:
    """
    List repositories the user owns, collaborates on or reaches through an org

    Args:
        github_token (str): OAuth token
        deadline (float): time.monotonic() budget end

    Returns:
        FetchResult of raw repository payloads
    """
    return paginate(
        github_token,
        "/user/repos",
        {"sort": "updated", "affiliation": REPO_AFFILIATION},
        "repositories",
        _list_page,
        max_pages=GH_REPO_MAX_PAGES,
        deadline=deadline,
    )
