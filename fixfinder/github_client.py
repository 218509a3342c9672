"""Rate-limited GitHub REST client for a single repository.

Every call goes through ``GitHubGateway._request`` which:
- keeps a fixed minimum spacing between calls (shared by all threads)
- applies a request timeout and optional bearer credential
- retries 429 / 5xx / network errors with exponential backoff
- maps 403 to ``QuotaExceeded`` and 404 to ``NotFound`` so callers can degrade
  instead of retrying

The only state is the spacing timer; one instance is shared by every caller.
"""
from __future__ import annotations

import threading
import time
import urllib.parse
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from .errors import CommitNotFound, NotFound, QuotaExceeded, RemoteError, TransientNetworkFailure
from .logging_utils import logger
from .models import CommitRef

GITHUB_API = "https://api.github.com"
USER_AGENT = "fixfinder"
PER_PAGE = 100


def encode_ref_for_github_url(ref: str) -> str:
    """Encode branch/tag for a GitHub URL while preserving slashes."""
    parts = [urllib.parse.quote(p, safe="") for p in (ref or "").split("/")]
    return "/".join(parts)


def _pr_dict(pr: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "number": pr.get("number"),
        "title": pr.get("title") or "",
        "body": pr.get("body") or "",
        "htmlUrl": pr.get("html_url") or "",
        "mergedAt": pr.get("merged_at"),
        "user": ((pr.get("user") or {}).get("login") or ""),
        "baseRef": ((pr.get("base") or {}).get("ref") or ""),
        "headRef": ((pr.get("head") or {}).get("ref") or ""),
        "mergeSha": (pr.get("merge_commit_sha") or "").strip(),
    }


class GitHubGateway:
    def __init__(
        self,
        repo: str,
        *,
        token: str = "",
        api_base: str = GITHUB_API,
        request_delay: float = 0.25,
        timeout: float = 15.0,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 60.0,
        session: Optional[requests.Session] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.repo = repo
        self.api_base = api_base.rstrip("/")
        self.request_delay = max(0.0, request_delay)
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.session = session or requests.Session()
        self._token = (token or "").strip()
        self._token_provider = token_provider
        self._lock = threading.Lock()
        self._next_slot = 0.0

    # ------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------

    def headers(self, accept: str = "application/vnd.github+json") -> Dict[str, str]:
        h = {"Accept": accept, "User-Agent": USER_AGENT}
        token = self._token_provider() if self._token_provider else self._token
        if token:
            h["Authorization"] = f"Bearer {token}"
        return h

    def _throttle(self) -> None:
        """Reserve the next call slot under the lock, sleep outside it."""
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.request_delay
        wait = slot - now
        if wait > 0:
            time.sleep(wait)

    def _backoff(self, attempt: int) -> float:
        return min(self.initial_backoff * (2 ** attempt), self.max_backoff)

    def _check_rate_headers(self, response: requests.Response, url: str) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        if not remaining:
            return
        try:
            n = int(remaining)
        except (ValueError, TypeError):
            return
        if n < 10:
            logger.warn("rate_limit_low", remaining=n, url=url[:100])

    def _quota_error(self, response: requests.Response, url: str) -> QuotaExceeded:
        reset = response.headers.get("X-RateLimit-Reset")
        try:
            reset_at = int(reset) if reset else None
        except ValueError:
            reset_at = None
        logger.warn("quota_exceeded", status=response.status_code, reset_at=reset_at, url=url[:100])
        return QuotaExceeded(f"GitHub API quota exceeded (HTTP {response.status_code})", reset_at=reset_at)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        accept: str = "application/vnd.github+json",
    ) -> requests.Response:
        url = path if path.startswith("http") else f"{self.api_base}{path}"

        for attempt in range(self.max_retries):
            last = attempt == self.max_retries - 1
            self._throttle()
            try:
                response = self.session.request(
                    method.upper(), url, headers=self.headers(accept), params=params, timeout=self.timeout
                )
            except requests.exceptions.RequestException as e:
                if not last:
                    wait_time = self._backoff(attempt)
                    logger.warn("network_error_retry", error=str(e), wait_seconds=wait_time, attempt=attempt + 1, url=url[:100])
                    time.sleep(wait_time)
                    continue
                raise TransientNetworkFailure(f"{method} {url[:100]}: {e.__class__.__name__}") from e

            self._check_rate_headers(response, url)
            status = response.status_code

            if status == 403:
                raise self._quota_error(response, url)

            if status == 429:
                if last:
                    raise self._quota_error(response, url)
                retry_after = response.headers.get("Retry-After")
                try:
                    wait_time = float(retry_after) if retry_after else self._backoff(attempt)
                except ValueError:
                    wait_time = self._backoff(attempt)
                logger.warn("rate_limit_hit", wait_seconds=wait_time, attempt=attempt + 1, url=url[:100])
                time.sleep(wait_time)
                continue

            if 500 <= status < 600:
                if last:
                    raise RemoteError(status, response.text[:200])
                wait_time = self._backoff(attempt)
                logger.warn("server_error_retry", status=status, wait_seconds=wait_time, attempt=attempt + 1, url=url[:100])
                time.sleep(wait_time)
                continue

            if status == 404:
                raise NotFound("resource", path)
            if status >= 400:
                raise RemoteError(status, response.text[:200])
            return response

        # max_retries >= 1 so every path above returns or raises
        raise RuntimeError("GitHub request failed after retries")

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        r = self._request("GET", path, params=params, **kwargs)
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            # requests.exceptions.JSONDecodeError is a ValueError
            raise TransientNetworkFailure(f"GET {path[:100]}: invalid JSON body") from e

    def _paginate(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = dict(params or {})
        params["per_page"] = PER_PAGE
        params["page"] = 1
        out: List[Dict[str, Any]] = []
        while True:
            arr = self._get_json(path, dict(params)) or []
            out.extend(arr)
            if len(arr) < PER_PAGE:
                break
            if max_pages is not None and params["page"] >= max_pages:
                break
            params["page"] += 1
        return out

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.repo}"

    # ------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------

    def get_commit(self, sha: str) -> CommitRef:
        try:
            data = self._get_json(f"{self._repo_path}/commits/{urllib.parse.quote(sha, safe='')}")
        except NotFound:
            raise CommitNotFound(sha) from None
        except RemoteError as e:
            # 422 "No commit found for SHA"
            if e.status_code == 422:
                raise CommitNotFound(sha) from None
            raise
        return CommitRef.from_github(data)

    def list_commits(self, branch: str, *, since: Optional[datetime] = None, max_pages: int = 5) -> List[CommitRef]:
        params: Dict[str, Any] = {"sha": branch}
        if since is not None:
            params["since"] = since.isoformat()
        arr = self._paginate(f"{self._repo_path}/commits", params, max_pages=max_pages)
        return [CommitRef.from_github(c) for c in arr]

    def compare(self, base: str, head: str) -> Dict[str, Any]:
        """Ahead/behind comparison: ``ahead_by`` counts commits in head not in base."""
        data = self._get_json(
            f"{self._repo_path}/compare/{encode_ref_for_github_url(base)}...{encode_ref_for_github_url(head)}",
            {"per_page": 1},
        )
        return {
            "status": (data.get("status") or "").lower(),
            "ahead_by": int(data.get("ahead_by") or 0),
            "behind_by": int(data.get("behind_by") or 0),
        }

    # ------------------------------------------------------------
    # Refs
    # ------------------------------------------------------------

    def list_tags(self) -> List[Dict[str, str]]:
        """Returns list of {name, sha}."""
        out = []
        for t in self._paginate(f"{self._repo_path}/tags"):
            name = (t.get("name") or "").strip()
            if name:
                out.append({"name": name, "sha": ((t.get("commit") or {}).get("sha") or "").strip()})
        return out

    def list_branches(self) -> List[Dict[str, Any]]:
        """Returns list of {name, sha, protected}."""
        out = []
        for b in self._paginate(f"{self._repo_path}/branches"):
            name = (b.get("name") or "").strip()
            if name:
                out.append({
                    "name": name,
                    "sha": ((b.get("commit") or {}).get("sha") or "").strip(),
                    "protected": bool(b.get("protected")),
                })
        return out

    def ref_exists(self, ref: str) -> bool:
        for path in (f"/branches/{encode_ref_for_github_url(ref)}", f"/git/ref/tags/{encode_ref_for_github_url(ref)}"):
            try:
                self._get_json(f"{self._repo_path}{path}")
                return True
            except NotFound:
                continue
        return False

    # ------------------------------------------------------------
    # Pull requests
    # ------------------------------------------------------------

    def pulls_for_commit(self, sha: str) -> List[Dict[str, Any]]:
        arr = self._get_json(f"{self._repo_path}/commits/{sha}/pulls") or []
        return [_pr_dict(pr) for pr in arr]

    def list_pulls(self, *, base: str, state: str = "all", max_pages: int = 3) -> List[Dict[str, Any]]:
        arr = self._paginate(
            f"{self._repo_path}/pulls",
            {"base": base, "state": state, "sort": "updated", "direction": "desc"},
            max_pages=max_pages,
        )
        return [_pr_dict(pr) for pr in arr]

    def pull_commits(self, number: int) -> List[CommitRef]:
        arr = self._paginate(f"{self._repo_path}/pulls/{int(number)}/commits", max_pages=3)
        return [CommitRef.from_github(c) for c in arr]

    # ------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------

    def repo_info(self) -> Dict[str, Any]:
        data = self._get_json(self._repo_path)
        return {
            "fullName": data.get("full_name") or self.repo,
            "defaultBranch": data.get("default_branch") or "",
            "private": bool(data.get("private")),
        }

    def rate_limit(self) -> Dict[str, Any]:
        data = self._get_json("/rate_limit")
        core = (data.get("resources") or {}).get("core") or data.get("rate") or {}
        return {
            "limit": core.get("limit"),
            "remaining": core.get("remaining"),
            "reset": core.get("reset"),
            "authenticated": "Authorization" in self.headers(),
        }
