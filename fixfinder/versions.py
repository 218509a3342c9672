"""Release identifier parsing, ordering and LTS classification.

Tag names are parsed with a regex into ``Version`` values. Names that are not
semver-shaped parse to ``None``: they stay in raw tag listings but are left
out of anything ordered by version.

Ordering is expressed as a classic ``cmp``-style function (negative when ``a``
is older than ``b``) so it can drive ``functools.cmp_to_key``. Lists shown to
users are newest first, see ``sort_newest_first``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Callable, Dict, Iterable, Optional

VERSION_RE = re.compile(r"^[vV]?(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z][0-9A-Za-z._-]*))?")
LTS_NAME_RE = re.compile(r"lts|stable|long[-_ ]?term", re.IGNORECASE)
_NATURAL_CHUNK_RE = re.compile(r"(\d+)")


@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: Optional[str]
    raw: str

    @property
    def triple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def line(self) -> str:
        """Release line, e.g. ``13.4`` for ``13.4.2-rc1``."""
        return f"{self.major}.{self.minor}"

    def __str__(self) -> str:
        return self.raw


def parse(name: str | None) -> Optional[Version]:
    """Parse a tag name into a Version, or None when it is not semver-shaped."""
    if not name:
        return None
    m = VERSION_RE.match(name.strip())
    if not m:
        return None
    major, minor, patch, pre = m.groups()
    return Version(
        major=int(major),
        minor=int(minor),
        patch=int(patch),
        prerelease=pre or None,
        raw=name,
    )


def natural_key(s: str) -> list[tuple[int, int, str]]:
    """Numeric-aware collation key: ``rc2`` < ``rc10``."""
    key: list[tuple[int, int, str]] = []
    for chunk in _NATURAL_CHUNK_RE.split(s or ""):
        if not chunk:
            continue
        if chunk.isdigit():
            key.append((0, int(chunk), ""))
        else:
            key.append((1, 0, chunk.lower()))
    return key


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def compare(a: Version, b: Version) -> int:
    """Compare two versions; negative when ``a`` is older than ``b``.

    Major, minor and patch decide first. At an equal triple a final release
    outranks any prerelease. Two finals or two prereleases fall back to a
    numeric-aware comparison of the suffix, then of the raw tag text.
    """
    c = _cmp(a.triple, b.triple)
    if c:
        return c
    if a.prerelease is None and b.prerelease is not None:
        return 1
    if a.prerelease is not None and b.prerelease is None:
        return -1
    if a.prerelease is not None:
        c = _cmp(natural_key(a.prerelease), natural_key(b.prerelease))
        if c:
            return c
    return _cmp(natural_key(a.raw), natural_key(b.raw))


def compare_tags(a, b) -> int:
    """Compare two tag-like objects (``.name`` and ``.version``).

    Versioned tags outrank unversioned ones; two unversioned tags compare by
    name with numeric-aware collation.
    """
    va, vb = a.version, b.version
    if va is not None and vb is not None:
        return compare(va, vb)
    if va is not None:
        return 1
    if vb is not None:
        return -1
    return _cmp(natural_key(a.name), natural_key(b.name))


def sort_newest_first(tags: Iterable) -> list:
    return sorted(tags, key=cmp_to_key(compare_tags), reverse=True)


# ------------------------------------------------------------
# LTS policies
# ------------------------------------------------------------

LtsPolicy = Callable[[Optional[Version]], bool]


def even_major_policy(version: Optional[Version]) -> bool:
    """Guess LTS from an even major with no prerelease suffix.

    This mirrors one project's versioning convention; deployments with a
    different scheme should pick ``name-only``.
    """
    return version is not None and version.major % 2 == 0 and version.prerelease is None


def name_only_policy(version: Optional[Version]) -> bool:
    return False


LTS_POLICIES: Dict[str, LtsPolicy] = {
    "even-major": even_major_policy,
    "name-only": name_only_policy,
}


def get_lts_policy(name: str | None) -> LtsPolicy:
    key = (name or "even-major").strip().lower()
    try:
        return LTS_POLICIES[key]
    except KeyError:
        raise ValueError(f"Unknown LTS policy: {name!r} (expected one of {sorted(LTS_POLICIES)})") from None


def is_lts(name: str, version: Optional[Version] = None, policy: LtsPolicy = even_major_policy) -> bool:
    if LTS_NAME_RE.search(name or ""):
        return True
    return policy(version)
