"""Shared fixtures: an in-memory stand-in for the GitHub gateway."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from fixfinder.cache import MetadataCache
from fixfinder.errors import CommitNotFound
from fixfinder.local_graph import RemoteGraph
from fixfinder.models import CommitRef

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def sha_of(label: str) -> str:
    """Deterministic 40-hex sha for a readable label."""
    h = 0
    for ch in label:
        h = (h * 131 + ord(ch)) % (16 ** 40)
    return f"{h:040x}"


def commit(label: str, message: str = "", days_ago: int = 0, author: str = "dev") -> CommitRef:
    return CommitRef(
        sha=sha_of(label),
        message=message or label,
        author=author,
        timestamp=NOW - timedelta(days=days_ago),
        source_url=f"https://github.com/acme/widget/commit/{sha_of(label)}",
    )


class FakeGateway:
    """Implements the GitHubGateway methods the resolvers use, from plain dicts."""

    repo = "acme/widget"

    def __init__(self) -> None:
        self.commits: Dict[str, CommitRef] = {}
        self.tags: List[Dict[str, str]] = []
        self.branches: List[Dict[str, Any]] = []
        # sha -> set of tag target shas that contain it
        self.containment: Dict[str, set] = {}
        self.compare_errors: Dict[str, Exception] = {}
        self.branch_history: Dict[str, List[CommitRef]] = {}
        self.branch_errors: Dict[str, Exception] = {}
        self.pulls_by_commit: Dict[str, List[Dict[str, Any]]] = {}
        self.pulls_by_base: Dict[str, List[Dict[str, Any]]] = {}
        self.commits_by_pull: Dict[int, List[CommitRef]] = {}
        self.compare_calls: List[tuple] = []
        self.commit_calls = 0
        self.tag_calls = 0
        self._lock = threading.Lock()

    # -- builders ------------------------------------------------------------

    def add_commit(self, c: CommitRef) -> CommitRef:
        self.commits[c.sha] = c
        return c

    def add_tag(self, name: str, target: Optional[str] = None) -> str:
        target = target or sha_of(f"tag:{name}")
        self.tags.append({"name": name, "sha": target})
        return target

    def add_branch(self, name: str) -> None:
        self.branches.append({"name": name, "sha": sha_of(f"branch:{name}"), "protected": False})

    # -- gateway surface -----------------------------------------------------

    def get_commit(self, sha: str) -> CommitRef:
        with self._lock:
            self.commit_calls += 1
        if sha not in self.commits:
            raise CommitNotFound(sha)
        return self.commits[sha]

    def list_tags(self) -> List[Dict[str, str]]:
        with self._lock:
            self.tag_calls += 1
        return list(self.tags)

    def list_branches(self) -> List[Dict[str, Any]]:
        return list(self.branches)

    def compare(self, base: str, head: str) -> Dict[str, Any]:
        with self._lock:
            self.compare_calls.append((base, head))
        if head in self.compare_errors:
            raise self.compare_errors[head]
        if head in self.containment.get(base, set()):
            return {"status": "ahead", "ahead_by": 3, "behind_by": 0}
        return {"status": "diverged", "ahead_by": 2, "behind_by": 4}

    def list_commits(self, branch: str, *, since=None, max_pages: int = 5) -> List[CommitRef]:
        if branch in self.branch_errors:
            raise self.branch_errors[branch]
        history = self.branch_history.get(branch, [])
        if since is not None:
            history = [c for c in history if c.timestamp and c.timestamp >= since]
        return list(history)

    def pulls_for_commit(self, sha: str) -> List[Dict[str, Any]]:
        return list(self.pulls_by_commit.get(sha, []))

    def list_pulls(self, *, base: str, state: str = "all", max_pages: int = 3) -> List[Dict[str, Any]]:
        return list(self.pulls_by_base.get(base, []))

    def pull_commits(self, number: int) -> List[CommitRef]:
        return list(self.commits_by_pull.get(number, []))

    def ref_exists(self, ref: str) -> bool:
        return any(b["name"] == ref for b in self.branches) or any(t["name"] == ref for t in self.tags)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def remote_graph(gateway: FakeGateway) -> RemoteGraph:
    return RemoteGraph(gateway)


@pytest.fixture()
def cache(remote_graph: RemoteGraph) -> MetadataCache:
    return MetadataCache(remote_graph)
