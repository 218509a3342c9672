"""Tests for fixfinder.membership: pruning, batching, partial results, caching."""

from __future__ import annotations

import threading
from typing import List
from unittest.mock import MagicMock

import pytest
import requests

from fixfinder.cache import MetadataCache
from fixfinder.errors import CommitNotFound, LocalGraphUnavailable, QuotaExceeded, TransientNetworkFailure
from fixfinder.github_client import GitHubGateway
from fixfinder.local_graph import RemoteGraph
from fixfinder.membership import MembershipResolver, release_line

from conftest import NOW, FakeGateway, commit


def _resolver(cache: MetadataCache, graph, gateway, **kwargs) -> MembershipResolver:
    kwargs.setdefault("batch_pause", 0)
    kwargs.setdefault("now", lambda: NOW)
    return MembershipResolver(cache, graph, gateway, **kwargs)


def _release_tags(gateway: FakeGateway, names: List[str]) -> List[str]:
    return [gateway.add_tag(n) for n in names]


# ---------------------------------------------------------------------------
# Candidate pruning
# ---------------------------------------------------------------------------


class TestCandidateWindow:
    @pytest.mark.parametrize("days,expected", [
        (0, 15), (29, 15), (30, 30), (89, 30), (120, 50), (200, 80), (364, 80), (365, 120), (400, 120),
    ])
    def test_age_bands(self, cache, remote_graph, gateway, days: int, expected: int) -> None:
        assert _resolver(cache, remote_graph, gateway).candidate_window(days) == expected

    def test_unknown_age_uses_cap(self, cache, remote_graph, gateway) -> None:
        assert _resolver(cache, remote_graph, gateway).candidate_window(None) == 120

    def test_old_commit_gets_widest_window(self, cache, remote_graph, gateway) -> None:
        r = _resolver(cache, remote_graph, gateway)
        assert r.candidate_window(400) == r.max_candidate_tags
        assert r.candidate_window(400) >= max(n for _, n in r.age_bands)
        assert r.candidate_window(400) > r.candidate_window(10)

    def test_custom_bands_respect_cap(self, cache, remote_graph, gateway) -> None:
        r = _resolver(cache, remote_graph, gateway, age_bands=[(10, 500)], max_candidate_tags=40)
        assert r.candidate_window(5) == 40

    def test_candidates_skip_unversioned_and_sort(self, cache, remote_graph, gateway) -> None:
        _release_tags(gateway, ["1.0.0", "nightly", "1.2.0", "1.1.0"])
        r = _resolver(cache, remote_graph, gateway)
        names = [t.name for t in r.candidate_tags(cache.get_tags(), 400)]
        assert names == ["1.2.0", "1.1.0", "1.0.0"]

    def test_candidates_scoped_to_release_line(self, cache, remote_graph, gateway) -> None:
        _release_tags(gateway, ["13.3.0", "13.4.0", "13.4.1", "13.5.0"])
        r = _resolver(cache, remote_graph, gateway)
        assert [t.name for t in r.candidate_tags(cache.get_tags(), 400, "13.4")] == ["13.4.1", "13.4.0"]

    def test_release_line(self) -> None:
        assert release_line("13.4-stable") == "13.4"
        assert release_line("stable-13.04") == "13.4"
        assert release_line("lts") is None
        assert release_line(None) is None


# ---------------------------------------------------------------------------
# Remote resolution
# ---------------------------------------------------------------------------


class TestRemoteResolution:
    def test_contained_tags_newest_first_with_summary(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("fix", days_ago=400))
        targets = dict(zip(
            ["12.0.0", "12.1.0", "13.0.0-rc1", "13.0.0", "11.0.0"],
            _release_tags(gateway, ["12.0.0", "12.1.0", "13.0.0-rc1", "13.0.0", "11.0.0"]),
        ))
        gateway.containment[c.sha] = {targets[n] for n in ["12.0.0", "12.1.0", "13.0.0-rc1", "13.0.0"]}

        result = _resolver(cache, remote_graph, gateway).get_membership(c.sha)
        assert [t.name for t in result.tags] == ["13.0.0", "13.0.0-rc1", "12.1.0", "12.0.0"]
        assert result.summary.latest_version.name == "13.0.0"
        assert result.summary.latest_lts.name == "12.1.0"
        assert result.summary.lts_count == 2

    def test_young_commit_checks_fewer_tags(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("new", days_ago=5))
        _release_tags(gateway, [f"1.{i}.0" for i in range(40)])
        _resolver(cache, remote_graph, gateway).get_membership(c.sha)
        assert len(gateway.compare_calls) == 15
        assert {head for _, head in gateway.compare_calls} == {
            t.target_sha for t in cache.get_tags() if t.version.minor >= 25
        }

    def test_result_is_cached(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("fix", days_ago=100))
        _release_tags(gateway, ["1.0.0", "1.1.0"])
        r = _resolver(cache, remote_graph, gateway)
        first = r.get_membership(c.sha)
        calls = len(gateway.compare_calls)
        assert r.get_membership(c.sha) is first
        assert len(gateway.compare_calls) == calls

    def test_concurrent_lookups_share_one_scan(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("fix", days_ago=100))
        _release_tags(gateway, [f"2.{i}.0" for i in range(10)])
        r = _resolver(cache, remote_graph, gateway)
        results = []
        lock = threading.Lock()

        def worker() -> None:
            res = r.get_membership(c.sha)
            with lock:
                results.append(res)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        assert len(results) == 8
        assert all(res is results[0] for res in results)
        assert len(gateway.compare_calls) == 10

    def test_tag_pointing_at_commit_needs_no_compare(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("tagged", days_ago=50))
        gateway.add_tag("3.0.0", c.sha)
        result = _resolver(cache, remote_graph, gateway).get_membership(c.sha)
        assert [t.name for t in result.tags] == ["3.0.0"]
        assert gateway.compare_calls == []

    def test_failed_compare_skips_tag(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("fix", days_ago=100))
        a, b = _release_tags(gateway, ["1.0.0", "1.1.0"])
        gateway.containment[c.sha] = {a, b}
        gateway.compare_errors[b] = TransientNetworkFailure("timeout")
        result = _resolver(cache, remote_graph, gateway).get_membership(c.sha)
        assert [t.name for t in result.tags] == ["1.0.0"]

    def test_broken_compare_body_skips_tag(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("fix", days_ago=100))
        good, broken = _release_tags(gateway, ["1.1.0", "1.2.0"])

        def request(method, url, **kwargs):
            if url.endswith(broken):
                raise requests.exceptions.ChunkedEncodingError("connection broken mid-body")
            r = MagicMock(spec=requests.Response)
            r.status_code = 200
            r.headers = {}
            r.content = b"{}"
            r.json.return_value = {"status": "ahead", "ahead_by": 1, "behind_by": 0}
            return r

        session = MagicMock(spec=requests.Session)
        session.request.side_effect = request
        github = GitHubGateway("acme/widget", session=session, request_delay=0, max_retries=1)
        result = _resolver(cache, remote_graph, github).get_membership(c.sha)
        assert [t.name for t in result.tags] == ["1.1.0"]

    def test_unknown_commit(self, gateway, cache, remote_graph) -> None:
        _release_tags(gateway, ["1.0.0"])
        with pytest.raises(CommitNotFound):
            _resolver(cache, remote_graph, gateway).get_membership("f" * 40)

    def test_branch_scope_uses_separate_key(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("fix", days_ago=100))
        targets = _release_tags(gateway, ["13.4.0", "13.5.0"])
        gateway.containment[c.sha] = set(targets)
        r = _resolver(cache, remote_graph, gateway)
        scoped = r.get_membership(c.sha, branch="13.4-stable")
        assert [t.name for t in scoped.tags] == ["13.4.0"]
        assert cache.get_membership(f"{c.sha}@13.4") is scoped
        assert cache.get_membership(c.sha) is None


class TestQuotaPartialResult:
    def test_quota_mid_scan_returns_completed_batches(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("fix", days_ago=400))
        names = [f"1.{i}.0" for i in range(10)]
        targets = dict(zip(names, _release_tags(gateway, names)))
        gateway.containment[c.sha] = set(targets.values())
        # Newest first: batches are (1.9,1.8) (1.7,1.6) (1.5,1.4) ...
        gateway.compare_errors[targets["1.5.0"]] = QuotaExceeded("limit", reset_at=123)

        sleep = MagicMock()
        r = _resolver(cache, remote_graph, gateway, batch_size=2, batch_pause=0.5, sleep=sleep)
        with pytest.raises(QuotaExceeded) as exc:
            r.get_membership(c.sha)

        partial = exc.value.partial
        assert [t.name for t in partial.tags] == ["1.9.0", "1.8.0", "1.7.0", "1.6.0"]
        assert exc.value.reset_at == 123
        assert sleep.call_count == 2
        sleep.assert_called_with(0.5)
        # batches after the failing one were never issued
        assert not any(head == targets["1.3.0"] for _, head in gateway.compare_calls)
        assert cache.get_membership(c.sha) is None


# ---------------------------------------------------------------------------
# Local graph path
# ---------------------------------------------------------------------------


class TestLocalPath:
    def test_local_answer_skips_remote_compares(self, gateway, cache) -> None:
        graph = MagicMock(spec=RemoteGraph)
        graph.tags_containing.return_value = ["1.1.0", "1.0.0", "untagged-build"]
        _release_tags(gateway, ["1.0.0", "1.1.0"])
        result = _resolver(cache, graph, gateway).get_membership("a" * 40)
        assert [t.name for t in result.tags] == ["1.1.0", "1.0.0"]
        assert gateway.compare_calls == []
        assert gateway.commit_calls == 0

    def test_first_tag_falls_back_to_oldest_member(self, gateway, cache, remote_graph) -> None:
        c = gateway.add_commit(commit("fix", days_ago=100))
        gateway.containment[c.sha] = set(_release_tags(gateway, ["1.0.0", "1.1.0"]))
        assert _resolver(cache, remote_graph, gateway).first_tag(c.sha) == "1.0.0"

    def test_first_tag_from_graph(self, gateway, cache) -> None:
        graph = MagicMock(spec=RemoteGraph)
        graph.first_tag_containing.return_value = "2.0.0"
        assert _resolver(cache, graph, gateway).first_tag("a" * 40) == "2.0.0"

    def test_local_unavailable_uses_remote(self, gateway, cache) -> None:
        graph = MagicMock(spec=RemoteGraph)
        graph.tags_containing.side_effect = LocalGraphUnavailable("mirror broken")
        c = gateway.add_commit(commit("fix", days_ago=100))
        gateway.containment[c.sha] = set(_release_tags(gateway, ["1.0.0"]))
        result = _resolver(cache, graph, gateway).get_membership(c.sha)
        assert [t.name for t in result.tags] == ["1.0.0"]
        assert len(gateway.compare_calls) == 1
