"""Backport evidence: has commit X been ported to a stable branch?

Every stable branch is scanned independently. Each commit on the branch since
the original's date is checked by pure predicates that return an ``Evidence``
variant (or None):

- ``CherryPick``: a ``(cherry picked from commit <sha>)`` footer naming the
  original. Structurally unambiguous, confidence 0.95.
- ``ExplicitReference``: the original's full or short sha, or its PR number,
  in the message. 0.95 / 0.85 / 0.80 by specificity.
- ``SimilarityMatch``: normalized subjects above the threshold; the score is
  the confidence. Only tried when a commit has no reference evidence.

Stable-branch PRs that reference the original (sha, PR number or URL) add
``PRCrossReference`` candidates for their commits at 0.90.

Duplicates collapse per sha: reference evidence always beats a similarity
match, otherwise the highest confidence wins and ties go to the more specific
method.
"""
from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .cache import MetadataCache
from .errors import FixFinderError, QuotaExceeded
from .github_client import GitHubGateway
from .local_graph import LocalGraphAccessor
from .logging_utils import logger
from .membership import MembershipResolver
from .models import (
    METHOD_SPECIFICITY,
    BackportCandidate,
    BackportMethod,
    BackportReport,
    Branch,
    CommitRef,
)
from .similarity import similarity

CHERRY_PICK_RE = re.compile(r"cherry[- ]picked from commit ([0-9a-f]{7,40})", re.IGNORECASE)
HEX_TOKEN_RE = re.compile(r"\b([0-9a-f]{7,40})\b", re.IGNORECASE)
PR_SUFFIX_RE = re.compile(r"\(#(\d+)\)")
SUBJECT_PREFIX_RE = re.compile(
    r"^(?:\s*\[[^\]]*\]\s*)*"
    r"(?:(?:fix|feat|feature|chore|docs|refactor|perf|test|tests|build|ci|style|revert|backport|cherry-pick)"
    r"(?:\([^)]*\))?!?\s*:\s*)?",
    re.IGNORECASE,
)

CHERRY_PICK_CONFIDENCE = 0.95
FULL_SHA_CONFIDENCE = 0.95
SHORT_SHA_CONFIDENCE = 0.85
PR_NUMBER_CONFIDENCE = 0.80
PR_CROSS_REFERENCE_CONFIDENCE = 0.90
SIMILARITY_THRESHOLD = 0.85


# ------------------------------------------------------------
# Evidence kinds
# ------------------------------------------------------------

@dataclass(frozen=True)
class CherryPick:
    referenced_sha: str
    confidence: float = CHERRY_PICK_CONFIDENCE
    method = BackportMethod.CHERRY_PICK_REFERENCE


@dataclass(frozen=True)
class ExplicitReference:
    kind: str  # full_sha | short_sha | pr_number
    confidence: float
    method = BackportMethod.EXPLICIT_REFERENCE


@dataclass(frozen=True)
class PRCrossReference:
    pr_number: int
    confidence: float = PR_CROSS_REFERENCE_CONFIDENCE
    method = BackportMethod.PR_CROSS_REFERENCE


@dataclass(frozen=True)
class SimilarityMatch:
    score: float
    method = BackportMethod.SIMILARITY_MATCH

    @property
    def confidence(self) -> float:
        return self.score


Evidence = Union[CherryPick, ExplicitReference, PRCrossReference, SimilarityMatch]


# ------------------------------------------------------------
# Predicates
# ------------------------------------------------------------

def shas_match(a: str, b: str) -> bool:
    """Prefix-compatible shas (either abbreviates the other), at least 7 chars."""
    a, b = (a or "").lower(), (b or "").lower()
    if len(a) < 7 or len(b) < 7:
        return False
    return a.startswith(b) or b.startswith(a)


def pr_numbers_in(text: str) -> Set[int]:
    return {int(n) for n in PR_SUFFIX_RE.findall(text or "")}


def detect_cherry_pick(original_sha: str, message: str) -> Optional[CherryPick]:
    for m in CHERRY_PICK_RE.finditer(message or ""):
        ref = m.group(1).lower()
        if shas_match(ref, original_sha):
            return CherryPick(referenced_sha=ref)
    return None


def detect_explicit_reference(
    original_sha: str,
    message: str,
    pr_numbers: Iterable[int] = (),
) -> Optional[ExplicitReference]:
    text = message or ""
    sha = original_sha.lower()
    if sha and sha in text.lower():
        return ExplicitReference("full_sha", FULL_SHA_CONFIDENCE)
    for m in HEX_TOKEN_RE.finditer(text):
        tok = m.group(1).lower()
        if len(tok) < len(sha) and sha.startswith(tok):
            return ExplicitReference("short_sha", SHORT_SHA_CONFIDENCE)
    for n in pr_numbers:
        if re.search(rf"(?:(?<![\w/])#|/pull/){int(n)}\b", text):
            return ExplicitReference("pr_number", PR_NUMBER_CONFIDENCE)
    return None


def normalize_subject(message: str) -> str:
    """First line, conventional/bracket prefixes and ``(#123)`` suffixes stripped, lowercased."""
    line = (message or "").split("\n", 1)[0]
    line = SUBJECT_PREFIX_RE.sub("", line, count=1)
    line = PR_SUFFIX_RE.sub("", line)
    return " ".join(line.lower().split())


def detect_similarity(
    original_message: str,
    message: str,
    threshold: float = SIMILARITY_THRESHOLD,
) -> Optional[SimilarityMatch]:
    a, b = normalize_subject(original_message), normalize_subject(message)
    if not a or not b:
        return None
    score = similarity(a, b)
    if score > threshold:
        return SimilarityMatch(score=score)
    return None


def evaluate_commit(
    original: CommitRef,
    commit: CommitRef,
    pr_numbers: Iterable[int] = (),
    threshold: float = SIMILARITY_THRESHOLD,
) -> Optional[Evidence]:
    """Strongest evidence that ``commit`` ports ``original``; similarity only as a last resort."""
    return (
        detect_cherry_pick(original.sha, commit.message)
        or detect_explicit_reference(original.sha, commit.message, pr_numbers)
        or detect_similarity(original.message, commit.message, threshold)
    )


def pr_references_original(
    pr: Dict,
    original_sha: str,
    pr_numbers: Iterable[int],
    pr_urls: Iterable[str] = (),
) -> bool:
    text = f"{pr.get('title') or ''}\n{pr.get('body') or ''}"
    if detect_explicit_reference(original_sha, text, pr_numbers) is not None:
        return True
    return any(url and url in text for url in pr_urls)


# ------------------------------------------------------------
# Merge
# ------------------------------------------------------------

def _rank(c: BackportCandidate) -> Tuple[bool, float, int]:
    return (c.method != BackportMethod.SIMILARITY_MATCH, c.confidence, METHOD_SPECIFICITY[c.method])


def merge_candidates(candidates: Iterable[BackportCandidate]) -> List[BackportCandidate]:
    """One record per sha, keeping the best-ranked evidence (first seen on ties)."""
    best: Dict[str, BackportCandidate] = {}
    for c in candidates:
        cur = best.get(c.sha)
        if cur is None or _rank(c) > _rank(cur):
            best[c.sha] = c
    return list(best.values())


def make_candidate(commit: CommitRef, branch: str, evidence: Evidence) -> BackportCandidate:
    return BackportCandidate(
        sha=commit.sha,
        branch=branch,
        message=commit.message,
        author=commit.author,
        date=commit.timestamp,
        method=evidence.method,
        confidence=float(evidence.confidence),
    )


# ------------------------------------------------------------
# Engine
# ------------------------------------------------------------

class BackportEngine:
    def __init__(
        self,
        cache: MetadataCache,
        graph: LocalGraphAccessor,
        gateway: GitHubGateway,
        membership: MembershipResolver,
        *,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        max_workers: int = 4,
        history_limit: int = 500,
        pull_pages: int = 3,
    ):
        self.cache = cache
        self.graph = graph
        self.gateway = gateway
        self.membership = membership
        self.similarity_threshold = similarity_threshold
        self.max_workers = max(1, max_workers)
        self.history_limit = history_limit
        self.pull_pages = pull_pages

    def find_backports(self, sha: str) -> BackportReport:
        report = self.cache.backports_or_resolve(sha, lambda: self._resolve(sha))
        if not report.complete:
            # Keep partial reports out of the cache so failed branches are retried.
            self.cache.backports.invalidate(sha)
        return report

    def _resolve(self, sha: str) -> BackportReport:
        original = self.cache.get_commit(sha)
        branches = self.cache.get_stable_branches()
        complete = True

        prs: List[Dict] = []
        try:
            prs = self.gateway.pulls_for_commit(original.sha)
        except FixFinderError as e:
            complete = False
            logger.warn("backport_original_pulls_failed", sha=original.sha, error=str(e))
        pr_numbers = {int(p["number"]) for p in prs if p.get("number")} | pr_numbers_in(original.first_line)
        pr_urls = [p["htmlUrl"] for p in prs if p.get("htmlUrl")]

        logger.info("backport_search_started", sha=original.sha, branches=len(branches), prs=sorted(pr_numbers))

        candidates: List[BackportCandidate] = []
        if branches:
            with ThreadPoolExecutor(max_workers=min(len(branches), self.max_workers), thread_name_prefix="backport") as pool:
                futures = [
                    (b, pool.submit(self._scan_branch, original, b, pr_numbers, pr_urls))
                    for b in branches
                ]
                for branch, fut in futures:
                    try:
                        found, branch_complete = fut.result()
                    except Exception as e:
                        complete = False
                        logger.error("backport_branch_failed", branch=branch.name, error=str(e), error_type=type(e).__name__)
                        continue
                    complete = complete and branch_complete
                    candidates.extend(found)

        merged = merge_candidates(candidates)
        enriched = []
        for c in merged:
            c, ok = self._enrich(c)
            complete = complete and ok
            enriched.append(c)

        report = BackportReport.from_candidates(original.sha, enriched, complete=complete)
        logger.info(
            "backport_search_finished",
            sha=original.sha, backports=report.summary.total_backports,
            branches=report.summary.branches_with_backports, complete=complete,
        )
        return report

    def _scan_branch(
        self,
        original: CommitRef,
        branch: Branch,
        pr_numbers: Set[int],
        pr_urls: Sequence[str],
    ) -> Tuple[List[BackportCandidate], bool]:
        log = logger.bind(sha=original.sha, branch=branch.name)
        found: List[BackportCandidate] = []
        history = self.graph.branch_log(branch.name, since=original.timestamp, limit=self.history_limit)
        for commit in history:
            if shas_match(commit.sha, original.sha):
                continue
            evidence = evaluate_commit(original, commit, pr_numbers, self.similarity_threshold)
            if evidence is not None:
                found.append(make_candidate(commit, branch.name, evidence))

        complete = True
        try:
            found.extend(self._pr_cross_references(original, branch, pr_numbers, pr_urls))
        except FixFinderError as e:
            complete = False
            log.warn("backport_pr_strategy_failed", error=str(e))

        log.info("backport_branch_scanned", commits=len(history), found=len(found))
        return found, complete

    def _pr_cross_references(
        self,
        original: CommitRef,
        branch: Branch,
        pr_numbers: Set[int],
        pr_urls: Sequence[str],
    ) -> List[BackportCandidate]:
        found: List[BackportCandidate] = []
        for pr in self.gateway.list_pulls(base=branch.name, state="all", max_pages=self.pull_pages):
            number = pr.get("number")
            if not number or int(number) in pr_numbers or not pr.get("mergedAt"):
                continue
            if not pr_references_original(pr, original.sha, pr_numbers, pr_urls):
                continue

            evidence = PRCrossReference(pr_number=int(number))
            commits = self.gateway.pull_commits(int(number))
            merge_sha = pr.get("mergeSha") or ""
            if merge_sha and not any(c.sha == merge_sha for c in commits):
                commits.append(self.cache.get_commit(merge_sha))
            for commit in commits:
                if shas_match(commit.sha, original.sha):
                    continue
                found.append(make_candidate(commit, branch.name, evidence))
        return found

    def _enrich(self, candidate: BackportCandidate) -> Tuple[BackportCandidate, bool]:
        try:
            result = self.membership.get_membership(candidate.sha, branch=candidate.branch)
        except QuotaExceeded as e:
            logger.warn("backport_enrich_quota", sha=candidate.sha, branch=candidate.branch)
            partial = e.partial.tags if e.partial is not None else ()
            return candidate.with_tags(partial), False
        except FixFinderError as e:
            logger.warn("backport_enrich_failed", sha=candidate.sha, branch=candidate.branch, error=str(e))
            return candidate, False
        return candidate.with_tags(result.tags), True
