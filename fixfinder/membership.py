"""Which tags contain commit X.

Resolution order:
1. cached result for the sha
2. ``git tag --contains`` on the local mirror
3. remote ahead/behind comparisons against an age-pruned candidate tag set,
   issued in small sequential batches with a pause between batches

A young commit cannot sit in an old tag, so recent commits are checked
against fewer (newer) tags; the window grows with commit age up to a cap.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from .cache import MetadataCache
from .config import DEFAULT_AGE_BANDS, DEFAULT_MAX_CANDIDATE_TAGS
from .errors import LocalGraphUnavailable, NotFound, QuotaExceeded, RemoteError, TransientNetworkFailure
from .github_client import GitHubGateway
from .local_graph import LocalGraphAccessor
from .logging_utils import logger
from .models import RELEASE_LINE_RE, MembershipResult, Tag
from .versions import LtsPolicy, even_major_policy, sort_newest_first


def release_line(branch: str | None) -> Optional[str]:
    """``13.4`` for ``13.4-stable``; None when the branch name has no version line."""
    if not branch:
        return None
    m = RELEASE_LINE_RE.search(branch)
    return f"{int(m.group(1))}.{int(m.group(2))}" if m else None


class MembershipResolver:
    def __init__(
        self,
        cache: MetadataCache,
        graph: LocalGraphAccessor,
        gateway: GitHubGateway,
        *,
        lts_policy: LtsPolicy = even_major_policy,
        age_bands: Sequence[Tuple[int, int]] = DEFAULT_AGE_BANDS,
        max_candidate_tags: int = DEFAULT_MAX_CANDIDATE_TAGS,
        batch_size: int = 5,
        batch_pause: float = 1.0,
        behind_tolerance: int = 0,
        max_workers: int = 4,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cache = cache
        self.graph = graph
        self.gateway = gateway
        self.lts_policy = lts_policy
        self.age_bands = tuple(sorted(age_bands))
        self.max_candidate_tags = max_candidate_tags
        self.batch_size = max(1, batch_size)
        self.batch_pause = batch_pause
        self.behind_tolerance = max(0, behind_tolerance)
        self._now = now
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="compare")

    # ------------------------------------------------------------
    # Candidate pruning
    # ------------------------------------------------------------

    def candidate_window(self, days_old: Optional[int]) -> int:
        if days_old is None:
            return self.max_candidate_tags
        for max_age, count in self.age_bands:
            if days_old < max_age:
                return min(count, self.max_candidate_tags)
        return self.max_candidate_tags

    def candidate_tags(self, tags: Sequence[Tag], days_old: Optional[int], line: Optional[str] = None) -> List[Tag]:
        versioned = [t for t in tags if t.version is not None]
        if line:
            versioned = [t for t in versioned if t.version.line == line]
        return sort_newest_first(versioned)[: self.candidate_window(days_old)]

    # ------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------

    def get_membership(self, sha: str, *, branch: Optional[str] = None) -> MembershipResult:
        """Tags containing ``sha``, newest first; ``branch`` scopes to its release line."""
        line = release_line(branch)
        key = f"{sha}@{line}" if line else sha
        return self.cache.membership_or_resolve(key, lambda: self._resolve(sha, line))

    def _resolve(self, sha: str, line: Optional[str]) -> MembershipResult:
        try:
            names = self.graph.tags_containing(sha)
        except LocalGraphUnavailable as e:
            logger.debug("membership_remote_path", sha=sha, reason=str(e))
            return self._resolve_remote(sha, line)

        by_name = self.cache.tags_by_name()
        tags = [by_name.get(n) or Tag.build(n, "", None, self.lts_policy) for n in names]
        if line:
            tags = [t for t in tags if t.version is not None and t.version.line == line]
        result = MembershipResult.from_tags(sha, tags)
        logger.info("membership_resolved", sha=sha, path="local", tags=len(result.tags))
        return result

    def _resolve_remote(self, sha: str, line: Optional[str]) -> MembershipResult:
        commit = self.cache.get_commit(sha)
        days_old = commit.days_old(self._now())
        candidates = self.candidate_tags(self.cache.get_tags(), days_old, line)
        batches = [candidates[i:i + self.batch_size] for i in range(0, len(candidates), self.batch_size)]
        logger.info(
            "membership_candidates",
            sha=commit.sha, days_old=days_old, candidates=len(candidates), batches=len(batches), line=line,
        )

        log = logger.bind(sha=sha)
        found: List[Tag] = []
        with log.timed("membership_remote_scan", level="DEBUG", candidates=len(candidates)):
            for idx, batch in enumerate(batches):
                if idx:
                    self._sleep(self.batch_pause)
                try:
                    found.extend(self._check_batch(commit.sha, batch))
                except QuotaExceeded as e:
                    partial = MembershipResult.from_tags(sha, found)
                    log.warn("membership_quota_exceeded", batch=idx + 1, batches=len(batches), found=len(partial.tags))
                    raise QuotaExceeded(str(e), reset_at=e.reset_at, partial=partial) from e

        result = MembershipResult.from_tags(sha, found)
        logger.info("membership_resolved", sha=sha, path="remote", tags=len(result.tags))
        return result

    def _check_batch(self, sha: str, batch: Sequence[Tag]) -> List[Tag]:
        """Compare one batch concurrently; a quota error voids the whole batch."""
        futures = [(tag, self._pool.submit(self.tag_contains, sha, tag)) for tag in batch]
        wait([f for _, f in futures])

        contained: List[Tag] = []
        quota: Optional[QuotaExceeded] = None
        for tag, fut in futures:
            err = fut.exception()
            if err is None:
                if fut.result():
                    contained.append(tag)
            elif isinstance(err, QuotaExceeded):
                quota = quota or err
            elif isinstance(err, (TransientNetworkFailure, NotFound, RemoteError)):
                logger.warn("compare_skipped", sha=sha, tag=tag.name, error=str(err))
            else:
                raise err
        if quota is not None:
            raise quota
        return contained

    def tag_contains(self, sha: str, tag: Tag) -> bool:
        if tag.target_sha and tag.target_sha == sha:
            return True
        cmp = self.gateway.compare(sha, tag.target_sha or tag.name)
        return cmp["behind_by"] <= self.behind_tolerance and cmp["status"] in ("ahead", "identical", "diverged")

    def first_tag(self, sha: str) -> Optional[str]:
        """Earliest release containing ``sha``."""
        try:
            return self.graph.first_tag_containing(sha)
        except LocalGraphUnavailable:
            result = self.get_membership(sha)
            return result.tags[-1].name if result.tags else None

    def close(self) -> None:
        self._pool.shutdown(wait=False)
