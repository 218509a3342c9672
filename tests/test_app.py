"""Tests for the FastAPI surface: routes, error mapping and admin endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from fixfinder.app import app
from fixfinder.config import Settings
from fixfinder.errors import CommitNotFound, QuotaExceeded, RemoteError, TransientNetworkFailure
from fixfinder.models import (
    BackportCandidate,
    BackportMethod,
    BackportReport,
    Branch,
    MembershipResult,
    Tag,
)
from fixfinder.service import FixFinderService, get_service

from conftest import NOW, commit

SHA = "3f2a9c1b7e4d5a6b8c9d0e1f2a3b4c5d6e7f8a9b"


@pytest.fixture()
def svc() -> MagicMock:
    s = MagicMock(spec=FixFinderService)
    s.settings = Settings(repo="acme/widget")
    s.graph = MagicMock()
    s.scheduler = MagicMock()
    return s


@pytest.fixture()
def client(svc: MagicMock):
    app.dependency_overrides[get_service] = lambda: svc
    yield TestClient(app)
    app.dependency_overrides.clear()


def _membership() -> MembershipResult:
    return MembershipResult.from_tags(SHA, [Tag.build("12.1.0", "a" * 40), Tag.build("13.0.0", "b" * 40)])


class TestRoutes:
    def test_health(self, client: TestClient) -> None:
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True

    def test_commit_tags(self, client: TestClient, svc: MagicMock) -> None:
        svc.get_membership.return_value = _membership()
        r = client.get(f"/api/commits/{SHA.upper()}/tags")
        assert r.status_code == 200
        body = r.json()
        svc.get_membership.assert_called_once_with(SHA)
        assert [t["name"] for t in body["tags"]] == ["13.0.0", "12.1.0"]
        assert body["tags"][1]["isLTS"] is True
        assert body["summary"] == {"latestVersion": "13.0.0", "latestLTS": "12.1.0", "ltsCount": 1}
        assert body["checkedAt"]

    def test_commit_tags_lts_only(self, client: TestClient, svc: MagicMock) -> None:
        svc.get_membership.return_value = _membership()
        body = client.get(f"/api/commits/{SHA}/tags", params={"ltsOnly": "true"}).json()
        assert [t["name"] for t in body["tags"]] == ["12.1.0"]
        assert body["summary"]["latestVersion"] == "13.0.0"

    def test_commit_tags_lts_only_false_keeps_all(self, client: TestClient, svc: MagicMock) -> None:
        svc.get_membership.return_value = _membership()
        body = client.get(f"/api/commits/{SHA}/tags?ltsOnly=false").json()
        assert len(body["tags"]) == 2

    def test_quick_tags(self, client: TestClient, svc: MagicMock) -> None:
        svc.quick_tags.return_value = {
            "sha": SHA, "firstTag": "12.1.0", "estimatedTags": 2, "branches": 1,
            "isInMainBranch": True, "defaultBranch": "master",
        }
        r = client.get(f"/api/commits/{SHA.upper()}/quick-tags")
        assert r.status_code == 200
        svc.quick_tags.assert_called_once_with(SHA)
        body = r.json()
        assert body["firstTag"] == "12.1.0"
        assert body["estimatedTags"] == 2
        assert body["isInMainBranch"] is True
        assert body["checkedAt"]

    def test_quick_tags_invalid_sha(self, client: TestClient, svc: MagicMock) -> None:
        assert client.get("/api/commits/nothex/quick-tags").status_code == 400
        svc.quick_tags.assert_not_called()

    @pytest.mark.parametrize("bad", ["xyz", "abc12", "g" * 40, "a" * 41])
    def test_invalid_sha_rejected(self, client: TestClient, svc: MagicMock, bad: str) -> None:
        r = client.get(f"/api/commits/{bad}/tags")
        assert r.status_code == 400
        svc.get_membership.assert_not_called()

    def test_commit_detail(self, client: TestClient, svc: MagicMock) -> None:
        svc.get_commit_detail.return_value = commit("orig", "fix: parser\n\nbody", days_ago=1)
        r = client.get(f"/api/commits/{SHA}")
        assert r.status_code == 200
        body = r.json()
        assert body["repository"] == "acme/widget"
        assert body["message"].startswith("fix: parser")
        assert body["files"] == []

    def test_backports(self, client: TestClient, svc: MagicMock) -> None:
        candidate = BackportCandidate(
            sha="c" * 40, branch="13.4-stable", message="port", author="dev", date=NOW,
            method=BackportMethod.CHERRY_PICK_REFERENCE, confidence=0.95, tags=(Tag.build("13.4.2", "d" * 40),),
        )
        svc.get_backports.return_value = BackportReport.from_candidates(SHA, [candidate])
        body = client.get(f"/api/commits/{SHA}/backports").json()
        assert body["backports"][0]["method"] == "cherry_pick_reference"
        assert body["backports"][0]["tags"][0]["name"] == "13.4.2"
        assert body["summary"] == {"totalBackports": 1, "branchesWithBackports": 1, "totalTagsAcrossBackports": 1}
        assert "complete" not in body

    def test_raw_tag_listing_keeps_non_semver(self, client: TestClient, svc: MagicMock) -> None:
        svc.list_tags.return_value = [Tag.build("nightly", "a" * 40), Tag.build("1.0.0", "b" * 40)]
        body = client.get("/api/tags").json()
        assert [t["name"] for t in body] == ["nightly", "1.0.0"]
        assert body[0]["version"] is None

    def test_stable_branches(self, client: TestClient, svc: MagicMock) -> None:
        svc.stable_branches.return_value = [Branch.build("13.4-stable", "a" * 40)]
        assert client.get("/api/branches/stable").json() == [{"name": "13.4-stable", "sha": "a" * 40, "isStable": True}]


class TestErrorMapping:
    def test_not_found(self, client: TestClient, svc: MagicMock) -> None:
        svc.get_membership.side_effect = CommitNotFound(SHA)
        r = client.get(f"/api/commits/{SHA}/tags")
        assert r.status_code == 404
        assert r.json()["error"] == "not_found"

    def test_quota_with_partial(self, client: TestClient, svc: MagicMock) -> None:
        partial = MembershipResult.from_tags(SHA, [Tag.build("13.0.0", "b" * 40)])
        svc.get_membership.side_effect = QuotaExceeded("limit", reset_at=1700000000, partial=partial)
        r = client.get(f"/api/commits/{SHA}/tags")
        assert r.status_code == 429
        body = r.json()
        assert body["resetAt"] == 1700000000
        assert [t["name"] for t in body["partial"]["tags"]] == ["13.0.0"]

    def test_timeout(self, client: TestClient, svc: MagicMock) -> None:
        svc.get_backports.side_effect = TransientNetworkFailure("timeout")
        assert client.get(f"/api/commits/{SHA}/backports").status_code == 504

    def test_upstream_error(self, client: TestClient, svc: MagicMock) -> None:
        svc.list_tags.side_effect = RemoteError(500, "boom")
        assert client.get("/api/tags").status_code == 502


class TestAdmin:
    def test_cache_stats(self, client: TestClient, svc: MagicMock) -> None:
        svc.cache_stats.return_value = {"tags": {"entries": 1}}
        body = client.get("/api/admin/cache").json()
        assert body["pools"] == {"tags": {"entries": 1}}

    def test_cache_clear(self, client: TestClient, svc: MagicMock) -> None:
        svc.clear_cache.return_value = {"tags": 1, "membership": 3}
        body = client.post("/api/admin/cache/clear").json()
        assert body["ok"] is True
        assert body["total"] == 4

    def test_mirror_refresh_without_mirror(self, client: TestClient, svc: MagicMock) -> None:
        svc.graph.available = False
        svc.graph.status.return_value = {"available": False}
        body = client.post("/api/admin/mirror/refresh").json()
        assert body["ok"] is False
        svc.scheduler.trigger_manual.assert_not_called()

    def test_mirror_refresh_triggered(self, client: TestClient, svc: MagicMock) -> None:
        svc.graph.available = True
        svc.scheduler.trigger_manual.return_value = True
        assert client.post("/api/admin/mirror/refresh").json()["ok"] is True

    def test_mirror_status(self, client: TestClient, svc: MagicMock) -> None:
        svc.scheduler.get_status.return_value = {"running": False, "lastError": None}
        body = client.get("/api/admin/mirror/status").json()
        assert body["running"] is False
        assert "checkedAt" in body

    def test_github_connection_rejects_bad_repo(self, client: TestClient) -> None:
        body = client.post("/api/admin/test/github", json={"repo": "not-a-repo"}).json()
        assert body["ok"] is False

    def test_github_connection_masks_token(self, client: TestClient) -> None:
        with patch("fixfinder.admin_routes.GitHubGateway") as gw_cls:
            gw_cls.return_value.repo_info.return_value = {"fullName": "acme/widget", "defaultBranch": "main", "private": False}
            gw_cls.return_value.rate_limit.return_value = {"remaining": 4999}
            body = client.post("/api/admin/test/github", json={"token": "ghp_abcdefghijkl"}).json()
        assert body["ok"] is True
        assert body["meta"]["masked"] == "ghp_…ijkl"
        assert "ghp_abcdefghijkl" not in str(body)
        assert body["meta"]["defaultBranch"] == "main"
