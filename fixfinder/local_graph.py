"""Graph containment queries against a local git mirror, with remote fallback.

``probe()`` picks the implementation at startup:

- ``GitLocalGraph`` shells out to ``git`` inside a mirror clone. Missing
  commits and branch refs are fetched from ``origin`` before querying. Any
  failure is logged and the same question is answered by the remote graph.
- ``NullLocalGraph`` is used when no usable mirror exists; it answers
  everything through the GitHub gateway.

``tags_containing`` is the one query without a cheap remote equivalent: when
the mirror cannot answer it raises ``LocalGraphUnavailable`` and the
membership resolver runs its pruned remote scan instead.
"""
from __future__ import annotations

import os
import subprocess
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TypeVar

from .errors import CommitNotFound, LocalGraphUnavailable
from .github_client import GitHubGateway
from .logging_utils import logger
from .models import DEFAULT_STABLE_BRANCH_PATTERNS, Branch, CommitRef, Tag, parse_iso
from .versions import LtsPolicy, even_major_policy

T = TypeVar("T")

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"
COMMIT_FORMAT = f"{RECORD_SEP}%H{FIELD_SEP}%an{FIELD_SEP}%aI{FIELD_SEP}%B"


class LocalGraphAccessor(ABC):
    """Containment and history queries over the project's commit graph."""

    available = False

    @abstractmethod
    def tags_containing(self, sha: str) -> List[str]: ...

    @abstractmethod
    def branch_contains(self, branch: str, sha: str) -> bool: ...

    @abstractmethod
    def first_tag_containing(self, sha: str) -> Optional[str]: ...

    @abstractmethod
    def ref_exists(self, ref: str) -> bool: ...

    @abstractmethod
    def list_tags(self) -> List[Tag]: ...

    @abstractmethod
    def list_branches(self) -> List[Branch]: ...

    @abstractmethod
    def get_commit(self, sha: str) -> CommitRef: ...

    @abstractmethod
    def branch_log(self, branch: str, *, since: Optional[datetime] = None, limit: int = 500) -> List[CommitRef]: ...

    def refresh(self) -> bool:
        return False

    def close(self) -> None:
        pass

    def status(self) -> dict:
        return {"available": self.available, "kind": type(self).__name__}


class RemoteGraph(LocalGraphAccessor):
    """Answers graph questions through the GitHub REST API."""

    def __init__(
        self,
        gateway: GitHubGateway,
        *,
        lts_policy: LtsPolicy = even_major_policy,
        stable_patterns: Sequence[str] = DEFAULT_STABLE_BRANCH_PATTERNS,
        history_pages: int = 5,
    ):
        self.gateway = gateway
        self.lts_policy = lts_policy
        self.stable_patterns = tuple(stable_patterns)
        self.history_pages = history_pages

    def tags_containing(self, sha: str) -> List[str]:
        raise LocalGraphUnavailable("tag containment needs a local mirror")

    def branch_contains(self, branch: str, sha: str) -> bool:
        cmp = self.gateway.compare(sha, branch)
        return cmp["behind_by"] == 0 and cmp["status"] in ("ahead", "identical")

    def first_tag_containing(self, sha: str) -> Optional[str]:
        raise LocalGraphUnavailable("first-tag lookup needs a local mirror")

    def ref_exists(self, ref: str) -> bool:
        return self.gateway.ref_exists(ref)

    def list_tags(self) -> List[Tag]:
        return [Tag.build(t["name"], t["sha"], None, self.lts_policy) for t in self.gateway.list_tags()]

    def list_branches(self) -> List[Branch]:
        return [Branch.build(b["name"], b["sha"], self.stable_patterns) for b in self.gateway.list_branches()]

    def get_commit(self, sha: str) -> CommitRef:
        return self.gateway.get_commit(sha)

    def branch_log(self, branch: str, *, since: Optional[datetime] = None, limit: int = 500) -> List[CommitRef]:
        return self.gateway.list_commits(branch, since=since, max_pages=self.history_pages)[:limit]


class NullLocalGraph(RemoteGraph):
    """Stand-in used when no local mirror is configured or usable."""

    def __init__(self, gateway: GitHubGateway, *, reason: str = "", **kwargs):
        super().__init__(gateway, **kwargs)
        self.reason = reason

    def status(self) -> dict:
        return {**super().status(), "reason": self.reason}


class GitLocalGraph(LocalGraphAccessor):
    """Queries a local mirror clone with the ``git`` binary."""

    available = True

    def __init__(
        self,
        mirror_path: str | Path,
        remote: RemoteGraph,
        *,
        repo: str = "",
        workers: Optional[int] = None,
        git_timeout: float = 60.0,
        fetch_timeout: float = 600.0,
        remote_name: str = "origin",
    ):
        self.mirror_path = Path(mirror_path)
        self.remote = remote
        self.repo = repo or remote.gateway.repo
        self.git_timeout = git_timeout
        self.fetch_timeout = fetch_timeout
        self.remote_name = remote_name
        self._executor = ThreadPoolExecutor(
            max_workers=workers or os.cpu_count() or 2,
            thread_name_prefix="git",
        )
        self.last_refresh_at: Optional[datetime] = None

    # ------------------------------------------------------------
    # git plumbing
    # ------------------------------------------------------------

    def _run(self, args: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        """Run git on the worker pool so blocking calls never stall request threads."""
        def call() -> subprocess.CompletedProcess:
            return subprocess.run(
                ["git"] + args,
                cwd=str(self.mirror_path),
                capture_output=True,
                text=True,
                timeout=timeout or self.git_timeout,
                check=False,
            )

        try:
            return self._executor.submit(call).result()
        except (subprocess.TimeoutExpired, OSError, RuntimeError) as e:
            # RuntimeError: executor already shut down by close()
            raise LocalGraphUnavailable(f"git {args[0]} failed: {e}") from e

    def _git(self, args: List[str], timeout: Optional[float] = None) -> str:
        result = self._run(args, timeout)
        if result.returncode != 0:
            raise LocalGraphUnavailable(f"git {' '.join(args[:2])} exited {result.returncode}: {result.stderr.strip()[:200]}")
        return result.stdout

    def _fallback(self, op: str, err: Exception, fn: Callable[[], T]) -> T:
        logger.warn("local_graph_fallback", op=op, error=str(err))
        return fn()

    def _remote_ref(self, branch: str) -> str:
        return f"refs/remotes/{self.remote_name}/{branch}"

    def has_commit(self, sha: str) -> bool:
        return self._run(["cat-file", "-e", f"{sha}^{{commit}}"]).returncode == 0

    def ensure_commit(self, sha: str) -> None:
        if self.has_commit(sha):
            return
        logger.debug("local_graph_fetch_commit", sha=sha)
        self._run(["fetch", "--quiet", self.remote_name, sha], timeout=self.fetch_timeout)
        if not self.has_commit(sha):
            raise LocalGraphUnavailable(f"commit {sha} not available in mirror")

    def ensure_branch(self, branch: str) -> str:
        ref = self._remote_ref(branch)
        if self._run(["rev-parse", "--verify", "--quiet", ref]).returncode == 0:
            return ref
        logger.debug("local_graph_fetch_branch", branch=branch)
        self._git(
            ["fetch", "--quiet", self.remote_name, f"+refs/heads/{branch}:{ref}"],
            timeout=self.fetch_timeout,
        )
        return ref

    @staticmethod
    def _parse_log(out: str) -> List[tuple[str, str, str, str]]:
        records = []
        for rec in out.split(RECORD_SEP):
            rec = rec.strip("\n")
            if not rec:
                continue
            parts = rec.split(FIELD_SEP, 3)
            if len(parts) < 4:
                continue
            records.append((parts[0].strip(), parts[1], parts[2].strip(), parts[3].strip()))
        return records

    def _commit_from_record(self, rec: tuple[str, str, str, str]) -> CommitRef:
        sha, author, date, body = rec
        return CommitRef(
            sha=sha,
            message=body,
            author=author,
            timestamp=parse_iso(date),
            source_url=f"https://github.com/{self.repo}/commit/{sha}",
        )

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    def tags_containing(self, sha: str) -> List[str]:
        self.ensure_commit(sha)
        out = self._git(["tag", "--contains", sha])
        return [line.strip() for line in out.splitlines() if line.strip()]

    def branch_contains(self, branch: str, sha: str) -> bool:
        try:
            self.ensure_commit(sha)
            ref = self.ensure_branch(branch)
            result = self._run(["merge-base", "--is-ancestor", sha, ref])
            if result.returncode in (0, 1):
                return result.returncode == 0
            raise LocalGraphUnavailable(f"merge-base exited {result.returncode}: {result.stderr.strip()[:200]}")
        except LocalGraphUnavailable as e:
            return self._fallback("branch_contains", e, lambda: self.remote.branch_contains(branch, sha))

    def first_tag_containing(self, sha: str) -> Optional[str]:
        try:
            self.ensure_commit(sha)
        except LocalGraphUnavailable as e:
            return self._fallback("first_tag_containing", e, lambda: self.remote.first_tag_containing(sha))
        result = self._run(["describe", "--contains", "--tags", sha])
        if result.returncode != 0:
            # No tag contains the commit yet.
            return None
        name = result.stdout.strip()
        for sep in ("~", "^"):
            name = name.split(sep, 1)[0]
        return name or None

    def ref_exists(self, ref: str) -> bool:
        try:
            for candidate in (ref, self._remote_ref(ref), f"refs/tags/{ref}"):
                if self._run(["rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"]).returncode == 0:
                    return True
        except LocalGraphUnavailable as e:
            return self._fallback("ref_exists", e, lambda: self.remote.ref_exists(ref))
        return self.remote.ref_exists(ref)

    def list_tags(self) -> List[Tag]:
        try:
            out = self._git([
                "for-each-ref", "refs/tags",
                f"--format=%(refname:short){FIELD_SEP}%(objectname){FIELD_SEP}%(*objectname){FIELD_SEP}%(creatordate:iso-strict)",
            ])
        except LocalGraphUnavailable as e:
            return self._fallback("list_tags", e, self.remote.list_tags)
        tags = []
        for line in out.splitlines():
            parts = line.split(FIELD_SEP)
            if len(parts) < 4 or not parts[0]:
                continue
            name, obj, peeled, date = parts
            tags.append(Tag.build(name, peeled or obj, parse_iso(date), self.remote.lts_policy))
        return tags

    def list_branches(self) -> List[Branch]:
        prefix = f"{self.remote_name}/"
        try:
            out = self._git([
                "for-each-ref", f"refs/remotes/{self.remote_name}",
                f"--format=%(refname:short){FIELD_SEP}%(objectname)",
            ])
        except LocalGraphUnavailable as e:
            return self._fallback("list_branches", e, self.remote.list_branches)
        branches = []
        for line in out.splitlines():
            name, _, sha = line.partition(FIELD_SEP)
            if not name.startswith(prefix) or name == f"{prefix}HEAD":
                continue
            branches.append(Branch.build(name[len(prefix):], sha, self.remote.stable_patterns))
        return branches

    def get_commit(self, sha: str) -> CommitRef:
        try:
            self.ensure_commit(sha)
            out = self._git(["show", "-s", f"--format={COMMIT_FORMAT}", sha])
        except LocalGraphUnavailable as e:
            return self._fallback("get_commit", e, lambda: self.remote.get_commit(sha))
        records = self._parse_log(out)
        if not records:
            raise CommitNotFound(sha)
        return self._commit_from_record(records[0])

    def branch_log(self, branch: str, *, since: Optional[datetime] = None, limit: int = 500) -> List[CommitRef]:
        try:
            ref = self.ensure_branch(branch)
            args = ["log", ref, f"-n{int(limit)}", f"--format={COMMIT_FORMAT}"]
            if since is not None:
                args.append(f"--since={since.isoformat()}")
            out = self._git(args)
        except LocalGraphUnavailable as e:
            return self._fallback("branch_log", e, lambda: self.remote.branch_log(branch, since=since, limit=limit))
        return [self._commit_from_record(r) for r in self._parse_log(out)]

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def refresh(self) -> bool:
        """Fetch branches and tags from origin; raises LocalGraphUnavailable on failure."""
        self._git(
            ["fetch", "--quiet", "--prune", "--tags", "--force", self.remote_name,
             f"+refs/heads/*:refs/remotes/{self.remote_name}/*"],
            timeout=self.fetch_timeout,
        )
        self.last_refresh_at = datetime.now().astimezone()
        logger.info("local_mirror_refreshed", path=str(self.mirror_path))
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def status(self) -> dict:
        return {
            **super().status(),
            "path": str(self.mirror_path),
            "lastRefreshAt": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
        }


def probe(mirror_path: str | Path | None, remote: RemoteGraph, **kwargs) -> LocalGraphAccessor:
    """Select the local git graph when a usable mirror exists, else the null graph."""
    kw = {
        "lts_policy": remote.lts_policy,
        "stable_patterns": remote.stable_patterns,
        "history_pages": remote.history_pages,
    }
    if not mirror_path:
        logger.info("local_graph_selected", kind="null", reason="no mirror configured")
        return NullLocalGraph(remote.gateway, reason="no mirror configured", **kw)

    path = Path(mirror_path)
    if not path.is_dir():
        logger.warn("local_graph_selected", kind="null", reason="mirror path missing", path=str(path))
        return NullLocalGraph(remote.gateway, reason=f"mirror path missing: {path}", **kw)

    try:
        result = subprocess.run(
            ["git", "rev-parse", "--git-dir"],
            cwd=str(path), capture_output=True, text=True, timeout=10, check=False,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.warn("local_graph_selected", kind="null", reason="git unavailable", error=str(e))
        return NullLocalGraph(remote.gateway, reason=f"git unavailable: {e}", **kw)
    if result.returncode != 0:
        logger.warn("local_graph_selected", kind="null", reason="not a git repository", path=str(path))
        return NullLocalGraph(remote.gateway, reason=f"not a git repository: {path}", **kw)

    logger.info("local_graph_selected", kind="git", path=str(path))
    return GitLocalGraph(path, remote, **kwargs)
