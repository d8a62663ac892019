from datetime import date

import httpx
import pytest

from services.shared import github_client
from services.shared.throttle import ThrottleUnavailable


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _install_responses(monkeypatch, responses):
    calls = []
    queue = list(responses)

    def _fake_send(github_token, path, params=None, timeout=None):
        _ = timeout
        calls.append({"token": github_token, "path": path, "params": dict(params or {})})
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr(github_client, "send_github_request", _fake_send)
    monkeypatch.setattr(github_client.time, "sleep", lambda _s: None)
    return calls


def _search_item(ts, repo_id=1, full_name="octo/app"):
    return {"commit": {"author": {"date": ts}}, "repository": {"id": repo_id, "full_name": full_name}}


def test_rate_limit_retries_same_page_once_expected(monkeypatch):
    calls = _install_responses(
        monkeypatch,
        [
            _FakeResponse(403, headers={"X-RateLimit-Remaining": "0"}),
            _FakeResponse(200, payload={"id": 1, "login": "octo"}),
        ],
    )

    assert github_client.fetch_viewer("tok")["login"] == "octo"
    assert len(calls) == 2


def test_second_rate_limit_raises_expected(monkeypatch):
    _install_responses(
        monkeypatch,
        [
            _FakeResponse(429),
            _FakeResponse(403, text="API rate limit exceeded"),
        ],
    )

    with pytest.raises(github_client.ProviderRateLimited):
        github_client.fetch_viewer("tok")


def test_server_errors_retry_until_budget_expected(monkeypatch):
    monkeypatch.setattr(github_client, "GH_MAX_RETRIES", 2)
    calls = _install_responses(
        monkeypatch,
        [
            _FakeResponse(502),
            httpx.ConnectTimeout("slow"),
            _FakeResponse(200, payload={"id": 1, "login": "octo"}),
        ],
    )

    assert github_client.fetch_viewer("tok")["id"] == 1
    assert len(calls) == 3


def test_server_errors_exhausting_retries_raise_unavailable_expected(monkeypatch):
    monkeypatch.setattr(github_client, "GH_MAX_RETRIES", 1)
    _install_responses(monkeypatch, [_FakeResponse(503), _FakeResponse(503)])

    with pytest.raises(github_client.ProviderUnavailable) as excinfo:
        github_client.fetch_viewer("tok")

    assert excinfo.value.error_marker == "provider_unavailable"


def test_other_client_errors_abort_immediately_expected(monkeypatch):
    calls = _install_responses(monkeypatch, [_FakeResponse(422)])

    with pytest.raises(github_client.GitHubAPIError) as excinfo:
        github_client.fetch_viewer("tok")

    assert excinfo.value.error_marker == "http_422"
    assert len(calls) == 1


def test_forbidden_without_rate_limit_signal_is_not_retried_expected(monkeypatch):
    calls = _install_responses(monkeypatch, [_FakeResponse(403, text="Resource protected by SSO")])

    with pytest.raises(github_client.GitHubAPIError):
        github_client.fetch_viewer("tok")

    assert len(calls) == 1


def test_unauthorized_propagates_permission_error_expected(monkeypatch):
    _install_responses(monkeypatch, [PermissionError("GitHub token unauthorized")])

    with pytest.raises(PermissionError):
        github_client.fetch_viewer("tok")


def test_commit_search_stops_on_short_page_expected(monkeypatch):
    monkeypatch.setattr(github_client, "GH_PAGE_SIZE", 2)
    calls = _install_responses(
        monkeypatch,
        [
            _FakeResponse(
                200,
                payload={
                    "total_count": 3,
                    "items": [_search_item("2024-01-10T09:00:00Z"), _search_item("2024-01-09T09:00:00Z")],
                },
            ),
            _FakeResponse(200, payload={"total_count": 3, "items": [_search_item("2024-01-08T09:00:00Z")]}),
        ],
    )

    result = github_client.fetch_commit_events("tok", "octo", date(2008, 1, 1))

    assert result.error is None
    assert result.total_count == 3
    assert len(result.items) == 3
    assert result.pages == 2
    assert calls[0]["path"] == "/search/commits"
    assert calls[0]["params"]["q"] == "author:octo committer-date:>=2008-01-01"
    assert calls[0]["params"]["sort"] == "committer-date"
    assert calls[0]["params"]["order"] == "desc"
    assert [call["params"]["page"] for call in calls] == [1, 2]


def test_pagination_failure_keeps_collected_items_expected(monkeypatch):
    monkeypatch.setattr(github_client, "GH_MAX_RETRIES", 0)
    _install_responses(
        monkeypatch,
        [
            _FakeResponse(200, payload=[{"id": 1}, {"id": 2}]),
            _FakeResponse(500),
        ],
    )

    result = github_client.paginate(
        "tok",
        "/user/repos",
        {},
        "repositories",
        github_client._list_page,
        max_pages=5,
        per_page=2,
    )

    assert result.is_partial
    assert result.error == "provider_unavailable"
    assert [item["id"] for item in result.items] == [1, 2]


def test_pagination_stops_at_page_ceiling_expected(monkeypatch):
    calls = _install_responses(
        monkeypatch,
        [_FakeResponse(200, payload=[{"id": n}]) for n in range(5)],
    )

    result = github_client.paginate(
        "tok",
        "/user/repos",
        {},
        "repositories",
        github_client._list_page,
        max_pages=3,
        per_page=1,
    )

    assert len(calls) == 3
    assert result.error is None
    assert len(result.items) == 3


def test_pagination_respects_deadline_expected(monkeypatch):
    calls = _install_responses(monkeypatch, [])

    result = github_client.paginate(
        "tok",
        "/user/repos",
        {},
        "repositories",
        github_client._list_page,
        deadline=0.0,
    )

    assert calls == []
    assert result.error == "deadline_exceeded"
    assert result.items == []


def test_malformed_json_aborts_query_expected(monkeypatch):
    _install_responses(monkeypatch, [_FakeResponse(200, payload=ValueError("bad json"))])

    result = github_client.count_pull_requests("tok", "octo", date(2008, 1, 1))

    assert result.error == "provider_error"
    assert result.total_count == 0


def test_count_queries_use_issue_search_expected(monkeypatch):
    calls = _install_responses(
        monkeypatch,
        [
            _FakeResponse(200, payload={"total_count": 10, "items": [{}]}),
            _FakeResponse(200, payload={"total_count": 5, "items": [{}]}),
            _FakeResponse(200, payload={"total_count": 12, "items": [{}]}),
        ],
    )
    since = date(2020, 1, 1)

    assert github_client.count_pull_requests("tok", "octo", since).total_count == 10
    assert github_client.count_issues("tok", "octo", since).total_count == 5
    assert github_client.count_reviews("tok", "octo", since).total_count == 12

    assert [call["params"]["q"] for call in calls] == [
        "author:octo type:pr created:>=2020-01-01",
        "author:octo type:issue created:>=2020-01-01",
        "reviewed-by:octo type:pr created:>=2020-01-01",
    ]
    assert all(call["path"] == "/search/issues" and call["params"]["per_page"] == 1 for call in calls)


def test_fetch_repositories_requests_affiliations_expected(monkeypatch):
    calls = _install_responses(monkeypatch, [_FakeResponse(200, payload=[{"id": 9, "name": "app"}])])

    result = github_client.fetch_repositories("tok")

    assert result.items == [{"id": 9, "name": "app"}]
    assert calls[0]["params"]["affiliation"] == "owner,collaborator,organization_member"
    assert calls[0]["params"]["sort"] == "updated"
    assert calls[0]["params"]["per_page"] == github_client.GH_PAGE_SIZE


def test_backoff_is_capped_expected(monkeypatch):
    monkeypatch.setattr(github_client, "GH_BACKOFF_BASE_SECONDS", 2)
    monkeypatch.setattr(github_client, "GH_BACKOFF_CAP_SECONDS", 5)
    monkeypatch.setattr(github_client.random, "uniform", lambda _a, _b: 0.5)

    assert github_client._compute_backoff_seconds(0) == 2.5
    assert github_client._compute_backoff_seconds(10) == 5.0


def test_semaphore_timeout_keeps_collected_pages_expected(monkeypatch):
    monkeypatch.setattr(github_client, "GH_PAGE_SIZE", 2)
    _install_responses(
        monkeypatch,
        [
            _FakeResponse(
                200,
                payload={
                    "total_count": 10,
                    "items": [_search_item("2024-01-10T09:00:00Z"), _search_item("2024-01-10T11:00:00Z")],
                },
            ),
            TimeoutError("Timed out acquiring GitHub semaphore"),
        ],
    )

    result = github_client.fetch_commit_events("tok", "octo", date(2008, 1, 1))

    assert result.error == "rate_limited"
    assert result.total_count == 10
    assert len(result.items) == 2


def test_throttle_redis_failure_becomes_unavailable_marker_expected(monkeypatch):
    calls = _install_responses(monkeypatch, [ThrottleUnavailable("Redis unavailable for GitHub throttling")])

    result = github_client.count_issues("tok", "octo", date(2008, 1, 1))

    assert result.error == "provider_unavailable"
    assert result.total_count == 0
    assert len(calls) == 1


def test_count_queries_skip_after_deadline_expected(monkeypatch):
    calls = _install_responses(monkeypatch, [])
    since = date(2020, 1, 1)

    results = [
        github_client.count_pull_requests("tok", "octo", since, deadline=0.0),
        github_client.count_issues("tok", "octo", since, deadline=0.0),
        github_client.count_reviews("tok", "octo", since, deadline=0.0),
    ]

    assert calls == []
    assert [result.error for result in results] == ["deadline_exceeded"] * 3


def test_retry_is_not_attempted_past_deadline_expected(monkeypatch):
    monkeypatch.setattr(github_client, "GH_MAX_RETRIES", 3)
    calls = _install_responses(monkeypatch, [_FakeResponse(502), _FakeResponse(200, payload={"id": 1})])

    with pytest.raises(github_client.DeadlineExceeded) as excinfo:
        github_client._get_json("tok", "/user", {}, "viewer", deadline=github_client.time.monotonic())

    assert excinfo.value.error_marker == "deadline_exceeded"
    assert len(calls) == 1


def test_rate_limit_sleep_is_skipped_past_deadline_expected(monkeypatch):
    slept = []
    calls = _install_responses(monkeypatch, [_FakeResponse(429), _FakeResponse(200, payload={"id": 1})])
    monkeypatch.setattr(github_client.time, "sleep", slept.append)

    with pytest.raises(github_client.DeadlineExceeded):
        github_client._get_json("tok", "/user", {}, "viewer", deadline=github_client.time.monotonic())

    assert slept == []
    assert len(calls) == 1
