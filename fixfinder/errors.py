"""Error taxonomy shared by the gateway, graph accessors and resolvers."""

from typing import Any, Optional


class FixFinderError(Exception):
    """Base class for every error raised by fixfinder."""


class NotFound(FixFinderError):
    """A commit, tag or branch identifier is unresolvable upstream. Never retried."""

    def __init__(self, what: str, ident: str = ""):
        self.what = what
        self.ident = ident
        super().__init__(f"{what} not found: {ident}" if ident else f"{what} not found")


class CommitNotFound(NotFound):
    def __init__(self, sha: str):
        super().__init__("commit", sha)
        self.sha = sha


class QuotaExceeded(FixFinderError):
    """The remote rate limit is exhausted.

    ``partial`` carries whatever the interrupted operation resolved before the
    quota ran out (for membership: a MembershipResult over completed batches).
    """

    def __init__(self, message: str = "GitHub API quota exceeded", *, reset_at: Optional[int] = None, partial: Any = None):
        super().__init__(message)
        self.reset_at = reset_at
        self.partial = partial


class LocalGraphUnavailable(FixFinderError):
    """The local mirror is missing, broken, or could not answer a query."""


class TransientNetworkFailure(FixFinderError):
    """A timeout or connection error on a single remote call."""


class RemoteError(FixFinderError):
    """Any other non-2xx response from the remote API."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")
