"""
Admin API: cache introspection/clear, local mirror control, GitHub connection test.
Credentials are accepted only in request body for the test call; never stored or logged.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .errors import FixFinderError, NotFound, QuotaExceeded
from .github_client import GitHubGateway
from .service import FixFinderService, get_service

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Request/response models
# ---------------------------------------------------------------------------


class TestGitHubRequest(BaseModel):
    repo: str = ""
    token: str = ""


def _ok(checked_at: str, message: str = "ok", meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"ok": True, "checkedAt": checked_at, "message": message, "meta": meta or {}}


def _fail(checked_at: str, message: str, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"ok": False, "checkedAt": checked_at, "message": message, "meta": meta or {}}


def _mask_token(t: str) -> str:
    if not t or len(t) < 8:
        return "***"
    return t[:4] + "…" + t[-4:]


def _ts() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@router.get("/cache")
def cache_stats(svc: FixFinderService = Depends(get_service)) -> Dict[str, Any]:
    """Entry counts, ages and in-flight loads per cache pool."""
    return {"checkedAt": _ts(), "pools": svc.cache_stats()}


@router.post("/cache/clear")
def cache_clear(svc: FixFinderService = Depends(get_service)) -> Dict[str, Any]:
    cleared = svc.clear_cache()
    return {"ok": True, "checkedAt": _ts(), "cleared": cleared, "total": sum(cleared.values())}


# ---------------------------------------------------------------------------
# Local mirror
# ---------------------------------------------------------------------------


@router.get("/mirror/status")
def mirror_status(svc: FixFinderService = Depends(get_service)) -> Dict[str, Any]:
    return {"checkedAt": _ts(), **svc.scheduler.get_status()}


@router.post("/mirror/refresh")
def mirror_refresh(svc: FixFinderService = Depends(get_service)) -> Dict[str, Any]:
    ts = _ts()
    if not svc.graph.available:
        return _fail(ts, "No local mirror configured.", svc.graph.status())
    if not svc.scheduler.trigger_manual():
        return _fail(ts, "Mirror refresh already running.")
    return _ok(ts, "Mirror refresh triggered.")


# ---------------------------------------------------------------------------
# Test connection (read-only)
# ---------------------------------------------------------------------------


@router.post("/test/github")
def test_github(req: TestGitHubRequest, svc: FixFinderService = Depends(get_service)) -> Dict[str, Any]:
    """Validate a GitHub token (optional) and repository access. Read-only."""
    ts = _ts()
    repo = (req.repo or svc.settings.repo).strip()
    token = (req.token or "").strip()
    if repo.count("/") != 1:
        return _fail(ts, "Repository must look like owner/name.", {"repo": repo})

    gw = GitHubGateway(repo, token=token, api_base=svc.settings.api_base, request_delay=0, max_retries=1)
    meta: Dict[str, Any] = {"repo": repo, "masked": _mask_token(token) if token else None}
    try:
        info = gw.repo_info()
        limits = gw.rate_limit()
    except NotFound:
        return _fail(ts, "Repository not found or no access.", meta)
    except QuotaExceeded:
        return _fail(ts, "Invalid token or rate limit exhausted.", meta)
    except FixFinderError as e:
        return _fail(ts, f"Request failed: {e}", meta)
    return _ok(ts, "Repository reachable.", {**meta, **info, "rateLimit": limits})
