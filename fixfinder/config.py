import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

from .models import DEFAULT_STABLE_BRANCH_PATTERNS

GITHUB_API = "https://api.github.com"
DEFAULT_REPO = "lf-edge/eve"

# (max_age_days, candidate_tag_count); commits older than the last band use max_candidate_tags.
DEFAULT_AGE_BANDS: Tuple[Tuple[int, int], ...] = (
    (30, 15),
    (90, 30),
    (180, 50),
    (365, 80),
)
DEFAULT_MAX_CANDIDATE_TAGS = 120


@dataclass
class Settings:
    repo: str = DEFAULT_REPO
    api_base: str = GITHUB_API
    token: str = ""
    request_delay: float = 0.25
    request_timeout: float = 15.0
    max_retries: int = 3

    mirror_path: str = ""
    mirror_refresh_minutes: int = 30

    ttl_tags: float = 3600.0
    ttl_branches: float = 3600.0
    ttl_membership: float = 1800.0
    ttl_backports: float = 1800.0
    ttl_commits: float = 86400.0

    lts_policy: str = "even-major"
    stable_branch_patterns: Tuple[str, ...] = DEFAULT_STABLE_BRANCH_PATTERNS

    age_bands: Tuple[Tuple[int, int], ...] = DEFAULT_AGE_BANDS
    max_candidate_tags: int = DEFAULT_MAX_CANDIDATE_TAGS
    compare_batch_size: int = 5
    batch_pause: float = 1.0
    behind_tolerance: int = 0

    max_concurrency: int = 4
    branch_history_pages: int = 5
    similarity_threshold: float = 0.85
    default_branch: str = "master"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return default
    return str(v).strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name, str(default)))
    except ValueError:
        raise ValueError(f"{name} must be a number") from None


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        raise ValueError(f"{name} must be an integer") from None


def _normalize_repo(repo: str) -> str:
    r = (repo or "").strip().rstrip("/")
    r = r.replace("https://github.com/", "").replace("http://github.com/", "")
    if r.endswith(".git"):
        r = r[:-4]
    if r.count("/") != 1:
        raise ValueError(f"GITHUB_REPO must look like owner/name, got {repo!r}")
    return r


def load_policy_file(path: Path) -> Dict[str, Any]:
    """Load the optional YAML policy file (LTS policy, branch patterns, bands, TTLs)."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid policy file (expected a mapping): {path}")
    return data


def apply_policy(settings: Settings, data: Dict[str, Any]) -> Settings:
    updates: Dict[str, Any] = {}
    if data.get("lts_policy"):
        updates["lts_policy"] = str(data["lts_policy"])
    patterns = data.get("stable_branch_patterns")
    if patterns:
        updates["stable_branch_patterns"] = tuple(str(p) for p in patterns)
    bands = data.get("age_bands")
    if bands:
        parsed = []
        for b in bands:
            parsed.append((int(b["max_age_days"]), int(b["tags"])))
        updates["age_bands"] = tuple(sorted(parsed))
    if data.get("max_candidate_tags"):
        updates["max_candidate_tags"] = int(data["max_candidate_tags"])
    for key, value in (data.get("ttl") or {}).items():
        attr = f"ttl_{key}"
        if not hasattr(settings, attr):
            raise ValueError(f"Unknown TTL pool in policy file: {key}")
        updates[attr] = float(value)
    return replace(settings, **updates)


def load_settings_from_env(dotenv_path: Optional[str] = None) -> Settings:
    # Load .env if present (local dev).
    load_dotenv(dotenv_path)

    s = Settings(
        repo=_normalize_repo(_env("GITHUB_REPO", DEFAULT_REPO)),
        api_base=_env("GITHUB_API", GITHUB_API).rstrip("/"),
        token=_env("GITHUB_TOKEN"),
        request_delay=_env_float("GITHUB_REQUEST_DELAY", 0.25),
        request_timeout=_env_float("GITHUB_TIMEOUT", 15.0),
        mirror_path=_env("LOCAL_MIRROR_PATH"),
        mirror_refresh_minutes=_env_int("MIRROR_REFRESH_MINUTES", 30),
        ttl_tags=_env_float("CACHE_TTL_TAGS", 3600.0),
        ttl_branches=_env_float("CACHE_TTL_BRANCHES", 3600.0),
        ttl_membership=_env_float("CACHE_TTL_MEMBERSHIP", 1800.0),
        ttl_backports=_env_float("CACHE_TTL_BACKPORTS", 1800.0),
        ttl_commits=_env_float("CACHE_TTL_COMMITS", 86400.0),
        lts_policy=_env("LTS_POLICY", "even-major"),
        max_concurrency=max(1, _env_int("MAX_CONCURRENCY", 4)),
        default_branch=_env("GITHUB_DEFAULT_BRANCH", "master"),
    )

    policy_path = _env("FIXFINDER_CONFIG")
    if policy_path:
        s = apply_policy(s, load_policy_file(Path(policy_path)))
    return s
