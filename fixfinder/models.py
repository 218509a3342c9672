"""Value objects shared across fixfinder.

Everything here is a frozen dataclass: safe to copy and hand across worker
threads. ``to_dict`` renders the camelCase shape the HTTP layer returns.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from .versions import LtsPolicy, Version, even_major_policy, is_lts, parse, sort_newest_first

DEFAULT_STABLE_BRANCH_PATTERNS = (r"stable", r"lts")
RELEASE_LINE_RE = re.compile(r"(\d+)\.(\d+)")


def parse_iso(s: str | None) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed); None when invalid."""
    if not s or not isinstance(s, str):
        return None
    try:
        dt = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


@dataclass(frozen=True)
class CommitFile:
    filename: str
    status: str = ""
    additions: int = 0
    deletions: int = 0
    patch: Optional[str] = None


@dataclass(frozen=True)
class CommitRef:
    sha: str
    message: str = ""
    author: str = ""
    timestamp: Optional[datetime] = None
    source_url: str = ""
    files: Tuple[CommitFile, ...] = ()

    @property
    def first_line(self) -> str:
        return (self.message or "").split("\n", 1)[0].strip()

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    def days_old(self, now: Optional[datetime] = None) -> Optional[int]:
        if not self.timestamp:
            return None
        now = now or datetime.now(timezone.utc)
        return max(0, (now - self.timestamp).days)

    @classmethod
    def from_github(cls, payload: Dict[str, Any]) -> "CommitRef":
        """Build from a GitHub ``/commits`` item (list or single-commit shape)."""
        commit = payload.get("commit") or {}
        author = commit.get("author") or {}
        files = tuple(
            CommitFile(
                filename=f.get("filename") or "",
                status=f.get("status") or "",
                additions=int(f.get("additions") or 0),
                deletions=int(f.get("deletions") or 0),
                patch=f.get("patch"),
            )
            for f in (payload.get("files") or [])
        )
        return cls(
            sha=(payload.get("sha") or "").strip(),
            message=commit.get("message") or "",
            author=author.get("name") or ((payload.get("author") or {}).get("login") or ""),
            timestamp=parse_iso(author.get("date")),
            source_url=payload.get("html_url") or "",
            files=files,
        )

    def to_dict(self, *, include_files: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "sha": self.sha,
            "message": self.message,
            "author": self.author,
            "date": _iso(self.timestamp),
            "url": self.source_url,
        }
        if include_files:
            d["files"] = [
                {
                    "filename": f.filename,
                    "status": f.status,
                    "additions": f.additions,
                    "deletions": f.deletions,
                    "patch": f.patch,
                }
                for f in self.files
            ]
        return d


@dataclass(frozen=True)
class Tag:
    name: str
    target_sha: str
    date: Optional[datetime] = None
    version: Optional[Version] = None
    is_lts: bool = False

    @classmethod
    def build(
        cls,
        name: str,
        target_sha: str,
        date: Optional[datetime] = None,
        policy: LtsPolicy = even_major_policy,
    ) -> "Tag":
        version = parse(name)
        return cls(
            name=name,
            target_sha=target_sha,
            date=date,
            version=version,
            is_lts=is_lts(name, version, policy),
        )

    @property
    def is_prerelease(self) -> bool:
        return self.version is not None and self.version.prerelease is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "sha": self.target_sha,
            "date": _iso(self.date),
            "version": self.version.raw if self.version else None,
            "isLTS": self.is_lts,
            "isPrerelease": self.is_prerelease,
        }


def is_stable_branch_name(name: str, patterns: Sequence[str] = DEFAULT_STABLE_BRANCH_PATTERNS) -> bool:
    return any(re.search(p, name or "", re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class Branch:
    name: str
    head_sha: str
    is_stable: bool = False

    @classmethod
    def build(cls, name: str, head_sha: str, patterns: Sequence[str] = DEFAULT_STABLE_BRANCH_PATTERNS) -> "Branch":
        return cls(name=name, head_sha=head_sha, is_stable=is_stable_branch_name(name, patterns))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "sha": self.head_sha, "isStable": self.is_stable}


@dataclass(frozen=True)
class MembershipSummary:
    latest_version: Optional[Tag] = None
    latest_lts: Optional[Tag] = None
    lts_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latestVersion": self.latest_version.name if self.latest_version else None,
            "latestLTS": self.latest_lts.name if self.latest_lts else None,
            "ltsCount": self.lts_count,
        }


@dataclass(frozen=True)
class MembershipResult:
    sha: str
    tags: Tuple[Tag, ...] = ()
    summary: MembershipSummary = field(default_factory=MembershipSummary)

    @classmethod
    def from_tags(cls, sha: str, tags: Iterable[Tag]) -> "MembershipResult":
        """Order tags newest first (versioned tags only) and summarise them."""
        ordered = tuple(sort_newest_first(t for t in tags if t.version is not None))
        latest_version = next((t for t in ordered if not t.is_prerelease and not t.is_lts), None)
        latest_lts = next((t for t in ordered if t.is_lts), None)
        return cls(
            sha=sha,
            tags=ordered,
            summary=MembershipSummary(
                latest_version=latest_version,
                latest_lts=latest_lts,
                lts_count=sum(1 for t in ordered if t.is_lts),
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "tags": [t.to_dict() for t in self.tags],
            "summary": self.summary.to_dict(),
        }


class BackportMethod(str, Enum):
    EXPLICIT_REFERENCE = "explicit_reference"
    CHERRY_PICK_REFERENCE = "cherry_pick_reference"
    PR_CROSS_REFERENCE = "pr_cross_reference"
    SIMILARITY_MATCH = "similarity_match"


# Higher is more specific; breaks confidence ties when merging duplicates.
METHOD_SPECIFICITY = {
    BackportMethod.CHERRY_PICK_REFERENCE: 3,
    BackportMethod.EXPLICIT_REFERENCE: 2,
    BackportMethod.PR_CROSS_REFERENCE: 1,
    BackportMethod.SIMILARITY_MATCH: 0,
}


@dataclass(frozen=True)
class BackportCandidate:
    sha: str
    branch: str
    message: str
    author: str
    date: Optional[datetime]
    method: BackportMethod
    confidence: float
    tags: Tuple[Tag, ...] = ()

    def with_tags(self, tags: Iterable[Tag]) -> "BackportCandidate":
        return replace(self, tags=tuple(tags))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "branch": self.branch,
            "message": self.message,
            "author": self.author,
            "date": _iso(self.date),
            "method": self.method.value,
            "confidence": round(self.confidence, 4),
            "tags": [t.to_dict() for t in self.tags],
        }


@dataclass(frozen=True)
class BackportSummary:
    total_backports: int = 0
    branches_with_backports: int = 0
    total_tags_across_backports: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalBackports": self.total_backports,
            "branchesWithBackports": self.branches_with_backports,
            "totalTagsAcrossBackports": self.total_tags_across_backports,
        }


@dataclass(frozen=True)
class BackportReport:
    sha: str
    backports: Tuple[BackportCandidate, ...] = ()
    summary: BackportSummary = field(default_factory=BackportSummary)
    # False when a branch, strategy or enrichment failed; never serialized.
    complete: bool = field(default=True, compare=False)

    @classmethod
    def from_candidates(
        cls,
        sha: str,
        candidates: Iterable[BackportCandidate],
        *,
        complete: bool = True,
    ) -> "BackportReport":
        _epoch = datetime.min.replace(tzinfo=timezone.utc)
        ordered = tuple(sorted(candidates, key=lambda c: c.date or _epoch, reverse=True))
        return cls(
            sha=sha,
            backports=ordered,
            summary=BackportSummary(
                total_backports=len(ordered),
                branches_with_backports=len({c.branch for c in ordered}),
                total_tags_across_backports=sum(len(c.tags) for c in ordered),
            ),
            complete=complete,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sha": self.sha,
            "backports": [c.to_dict() for c in self.backports],
            "summary": self.summary.to_dict(),
        }
