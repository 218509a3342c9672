from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .admin_routes import router as admin_router
from .errors import NotFound, QuotaExceeded, RemoteError, TransientNetworkFailure
from .logging_utils import logger
from .service import FixFinderService, get_service, is_valid_sha, shutdown_service

APP_NAME = "fixfinder"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    shutdown_service()


class TagOut(BaseModel):
    name: str
    sha: str
    date: Optional[str] = None
    version: Optional[str] = None
    isLTS: bool = False
    isPrerelease: bool = False


class MembershipSummaryOut(BaseModel):
    latestVersion: Optional[str] = None
    latestLTS: Optional[str] = None
    ltsCount: int = 0


class MembershipResponse(BaseModel):
    sha: str
    tags: List[TagOut]
    summary: MembershipSummaryOut
    checkedAt: str


class BackportOut(BaseModel):
    sha: str
    branch: str
    message: str
    author: str
    date: Optional[str] = None
    method: str
    confidence: float
    tags: List[TagOut] = Field(default_factory=list)


class BackportSummaryOut(BaseModel):
    totalBackports: int = 0
    branchesWithBackports: int = 0
    totalTagsAcrossBackports: int = 0


class BackportsResponse(BaseModel):
    sha: str
    backports: List[BackportOut]
    summary: BackportSummaryOut
    checkedAt: str


class CommitFileOut(BaseModel):
    filename: str
    status: str = ""
    additions: int = 0
    deletions: int = 0
    patch: Optional[str] = None


class CommitResponse(BaseModel):
    sha: str
    message: str
    author: str
    date: Optional[str] = None
    url: str = ""
    repository: str
    files: List[CommitFileOut] = Field(default_factory=list)


class QuickTagsResponse(BaseModel):
    sha: str
    firstTag: Optional[str] = None
    estimatedTags: int = 0
    branches: int = 0
    isInMainBranch: bool = False
    defaultBranch: str
    checkedAt: str


class BranchOut(BaseModel):
    name: str
    sha: str
    isStable: bool


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _checked_sha(sha: str) -> str:
    sha = (sha or "").strip().lower()
    if not is_valid_sha(sha):
        raise HTTPException(status_code=400, detail="Commit sha must be 7-40 hex characters")
    return sha


app = FastAPI(title=APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"]
)

app.include_router(admin_router)


@app.exception_handler(NotFound)
def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "not_found", "message": str(exc)})


@app.exception_handler(QuotaExceeded)
def quota_handler(request: Request, exc: QuotaExceeded) -> JSONResponse:
    content: Dict[str, Any] = {"error": "quota_exceeded", "message": str(exc), "resetAt": exc.reset_at}
    if exc.partial is not None and hasattr(exc.partial, "to_dict"):
        content["partial"] = exc.partial.to_dict()
    return JSONResponse(status_code=429, content=content)


@app.exception_handler(TransientNetworkFailure)
def transient_handler(request: Request, exc: TransientNetworkFailure) -> JSONResponse:
    return JSONResponse(status_code=504, content={"error": "upstream_timeout", "message": str(exc)})


@app.exception_handler(RemoteError)
def remote_error_handler(request: Request, exc: RemoteError) -> JSONResponse:
    logger.error("upstream_error", status=exc.status_code, path=request.url.path)
    return JSONResponse(status_code=502, content={"error": "upstream_error", "message": str(exc)})


@app.get("/api/health")
def health() -> Dict[str, Any]:
    return {"ok": True, "service": APP_NAME}


@app.get("/api/commits/{sha}", response_model=CommitResponse)
def commit_detail(sha: str, svc: FixFinderService = Depends(get_service)) -> CommitResponse:
    commit = svc.get_commit_detail(_checked_sha(sha))
    return CommitResponse(repository=svc.settings.repo, **commit.to_dict(include_files=True))


@app.get("/api/commits/{sha}/tags", response_model=MembershipResponse)
def commit_tags(
    sha: str,
    lts_only: bool = Query(False, alias="ltsOnly"),
    svc: FixFinderService = Depends(get_service),
) -> MembershipResponse:
    data = svc.get_membership(_checked_sha(sha)).to_dict()
    if lts_only:
        # Summary still describes the full result.
        data["tags"] = [t for t in data["tags"] if t["isLTS"]]
    return MembershipResponse(checkedAt=_now(), **data)


@app.get("/api/commits/{sha}/quick-tags", response_model=QuickTagsResponse)
def commit_quick_tags(sha: str, svc: FixFinderService = Depends(get_service)) -> QuickTagsResponse:
    return QuickTagsResponse(checkedAt=_now(), **svc.quick_tags(_checked_sha(sha)))


@app.get("/api/commits/{sha}/backports", response_model=BackportsResponse)
def commit_backports(sha: str, svc: FixFinderService = Depends(get_service)) -> BackportsResponse:
    report = svc.get_backports(_checked_sha(sha))
    return BackportsResponse(checkedAt=_now(), **report.to_dict())


@app.get("/api/tags", response_model=List[TagOut])
def tags(svc: FixFinderService = Depends(get_service)) -> List[TagOut]:
    # Raw listing: non-semver tags included, source order.
    return [TagOut(**t.to_dict()) for t in svc.list_tags()]


@app.get("/api/branches/stable", response_model=List[BranchOut])
def stable_branches(svc: FixFinderService = Depends(get_service)) -> List[BranchOut]:
    return [BranchOut(**b.to_dict()) for b in svc.stable_branches()]
