"""Builds the component graph from Settings and owns its lifecycle."""
from __future__ import annotations

import re
import threading
from typing import Any, Dict, List, Optional

from .backports import BackportEngine
from .cache import MetadataCache
from .config import Settings, load_settings_from_env
from .errors import NotFound
from .github_client import GitHubGateway
from .local_graph import LocalGraphAccessor, RemoteGraph, probe
from .logging_utils import logger
from .membership import MembershipResolver, release_line
from .mirror_scheduler import MirrorScheduler
from .models import BackportReport, Branch, CommitRef, MembershipResult, Tag
from .versions import compare, get_lts_policy

SHA_RE = re.compile(r"^[0-9a-fA-F]{7,40}$")


def is_valid_sha(sha: str) -> bool:
    return bool(SHA_RE.match(sha or ""))


class FixFinderService:
    def __init__(
        self,
        settings: Settings,
        *,
        gateway: Optional[GitHubGateway] = None,
        graph: Optional[LocalGraphAccessor] = None,
        cache: Optional[MetadataCache] = None,
    ):
        self.settings = settings
        policy = get_lts_policy(settings.lts_policy)

        self.gateway = gateway or GitHubGateway(
            settings.repo,
            token=settings.token,
            api_base=settings.api_base,
            request_delay=settings.request_delay,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )
        if graph is None:
            remote = RemoteGraph(
                self.gateway,
                lts_policy=policy,
                stable_patterns=settings.stable_branch_patterns,
                history_pages=settings.branch_history_pages,
            )
            graph = probe(settings.mirror_path, remote)
        self.graph = graph

        self.cache = cache or MetadataCache(
            self.graph,
            ttl_tags=settings.ttl_tags,
            ttl_branches=settings.ttl_branches,
            ttl_membership=settings.ttl_membership,
            ttl_backports=settings.ttl_backports,
            ttl_commits=settings.ttl_commits,
        )
        self.membership = MembershipResolver(
            self.cache,
            self.graph,
            self.gateway,
            lts_policy=policy,
            age_bands=settings.age_bands,
            max_candidate_tags=settings.max_candidate_tags,
            batch_size=settings.compare_batch_size,
            batch_pause=settings.batch_pause,
            behind_tolerance=settings.behind_tolerance,
            max_workers=settings.max_concurrency,
        )
        self.backports = BackportEngine(
            self.cache,
            self.graph,
            self.gateway,
            self.membership,
            similarity_threshold=settings.similarity_threshold,
            max_workers=settings.max_concurrency,
        )
        self.scheduler = MirrorScheduler(self.graph, self.cache, settings.mirror_refresh_minutes)

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        self.scheduler.start()
        logger.info("service_started", repo=self.settings.repo, graph=type(self.graph).__name__)

    def close(self) -> None:
        self.scheduler.stop()
        self.membership.close()
        self.graph.close()

    # -- core-exposed operations ---------------------------------------------

    def get_commit_detail(self, sha: str) -> CommitRef:
        return self.cache.commits.get_or_load(f"detail:{sha}", lambda: self.gateway.get_commit(sha))

    def get_membership(self, sha: str) -> MembershipResult:
        return self.membership.get_membership(sha)

    def get_backports(self, sha: str) -> BackportReport:
        return self.backports.find_backports(sha)

    def quick_tags(self, sha: str) -> Dict[str, Any]:
        """Cheap first answer: earliest release, releases from it on, and default-branch reachability.

        ``estimatedTags`` counts versioned tags at or after the first one, and
        ``branches`` counts stable branches whose release line is at or after
        its line. Both assume the fix was never reverted.
        """
        first = self.membership.first_tag(sha)
        first_version = next((t.version for t in self.cache.get_tags() if t.name == first), None)

        estimated = 0
        branches = 0
        if first_version is not None:
            estimated = sum(
                1 for t in self.cache.get_tags()
                if t.version is not None and compare(t.version, first_version) >= 0
            )
            first_line = (first_version.major, first_version.minor)
            for b in self.cache.get_stable_branches():
                line = release_line(b.name)
                if line and tuple(int(p) for p in line.split(".")) >= first_line:
                    branches += 1
        elif first is not None:
            estimated = 1

        try:
            in_main = self.graph.branch_contains(self.settings.default_branch, sha)
        except NotFound:
            logger.warn("default_branch_missing", branch=self.settings.default_branch)
            in_main = False

        return {
            "sha": sha,
            "firstTag": first,
            "estimatedTags": estimated,
            "branches": branches,
            "isInMainBranch": in_main,
            "defaultBranch": self.settings.default_branch,
        }

    def list_tags(self) -> List[Tag]:
        return self.cache.get_tags()

    def stable_branches(self) -> List[Branch]:
        return self.cache.get_stable_branches()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def clear_cache(self) -> Dict[str, int]:
        return self.cache.clear_all()


_service: Optional[FixFinderService] = None
_service_lock = threading.Lock()


def get_service() -> FixFinderService:
    """Process-wide service, built lazily from the environment on first use."""
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                svc = FixFinderService(load_settings_from_env())
                svc.start()
                _service = svc
    return _service


def shutdown_service() -> None:
    global _service
    with _service_lock:
        if _service is not None:
            _service.close()
            _service = None
