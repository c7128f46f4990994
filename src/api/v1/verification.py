"""Mentor verification API endpoints for MentorGate v1.

Exposes the verification pipeline to the platform backend:

* ``POST /github/initiate``  -- requirements gate + challenge code
* ``POST /github/complete``  -- ownership proof, scoring, persistence
* ``POST /documents``        -- OCR credential documents (multipart)
* ``POST /identity``         -- out-of-band email / phone channel
* ``GET  /status/{id}``      -- status projection
* ``GET  /record/{id}``      -- full persisted record

Challenge failures map to 400, a frozen verified record to 409 and
persistence failures to 503.  "Not yet proven" and gate failures are
ordinary 200 responses carrying the itemised verdict.
"""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field, model_validator

from src.middleware.auth import authenticate_caller
from src.models.profile import PendingProfileData
from src.models.verification import (
    CompleteResult,
    DocumentBatchVerdict,
    IdentityVerdict,
    InitiateResult,
    VerificationRecord,
    VerificationStatusView,
)
from src.services.verification.exceptions import (
    AlreadyVerifiedError,
    ChallengeError,
    PersistenceError,
    VerificationError,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/verification",
    tags=["verification"],
    dependencies=[Depends(authenticate_caller)],
)

_GITHUB_HANDLE_PATTERN = r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class InitiateRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=128)
    github_username: str = Field(..., pattern=_GITHUB_HANDLE_PATTERN)


class CompleteRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=128)
    github_username: str = Field(..., pattern=_GITHUB_HANDLE_PATTERN)
    profile_data: PendingProfileData | None = None
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=32)


class IdentityRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=128)
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=32)

    @model_validator(mode="after")
    def _require_channel(self) -> IdentityRequest:
        if not (self.email or self.phone):
            raise ValueError("at least one of email or phone is required")
        return self


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_orchestrator(request: Request):
    """Retrieve the verification orchestrator from app state, or raise 503."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="Verification service not initialised.",
        )
    return orchestrator


def _http_error(exc: VerificationError) -> HTTPException:
    if isinstance(exc, ChallengeError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, AlreadyVerifiedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PersistenceError):
        logger.error("api.verification.persistence_failed", error=str(exc))
        return HTTPException(status_code=503, detail="Verification record store unavailable.")
    return HTTPException(status_code=500, detail="Verification failed.")


# ---------------------------------------------------------------------------
# GitHub ownership
# ---------------------------------------------------------------------------


@router.post("/github/initiate", response_model=InitiateResult)
async def initiate_github_verification(body: InitiateRequest, request: Request) -> InitiateResult:
    """Check minimum requirements and issue a challenge code.

    No code is returned when requirements fail; ``failing_requirements``
    lists each shortfall.
    """
    orchestrator = _get_orchestrator(request)
    try:
        result = await orchestrator.initiate(body.subject_id, body.github_username)
    except VerificationError as exc:
        raise _http_error(exc) from exc

    logger.info(
        "api.verification.initiate",
        subject_id=body.subject_id,
        requirements_passed=result.requirements_passed,
    )
    return result


@router.post("/github/complete", response_model=CompleteResult)
async def complete_github_verification(body: CompleteRequest, request: Request) -> CompleteResult:
    """Check the published challenge code and record the verdict.

    Returns 400 with ``"code expired or not found"`` or ``"handle does
    not match session"`` when the challenge cannot be used.
    """
    orchestrator = _get_orchestrator(request)
    try:
        result = await orchestrator.complete(
            body.subject_id,
            body.github_username,
            pending_profile_data=body.profile_data,
            email=body.email,
            phone=body.phone,
        )
    except VerificationError as exc:
        raise _http_error(exc) from exc

    logger.info(
        "api.verification.complete",
        subject_id=body.subject_id,
        verified=result.verified,
        requirements_met=result.requirements_met,
        score=result.score,
    )
    return result


# ---------------------------------------------------------------------------
# Documents and identity
# ---------------------------------------------------------------------------


@router.post("/documents", response_model=DocumentBatchVerdict)
async def submit_documents(
    request: Request,
    subject_id: Annotated[str, Form(min_length=1, max_length=128)],
    files: Annotated[list[UploadFile], File()],
    types: Annotated[list[str], Form()],
) -> DocumentBatchVerdict:
    """Upload credential documents with their declared types.

    ``files`` and ``types`` are paired by position.  The batch verifies
    when any one document verifies.
    """
    from config.settings import settings

    orchestrator = _get_orchestrator(request)

    if len(files) != len(types):
        raise HTTPException(
            status_code=400,
            detail="Each uploaded file needs exactly one declared type.",
        )

    documents: list[tuple[bytes, str]] = []
    for upload, declared_type in zip(files, types):
        content = await upload.read()
        if len(content) > settings.max_document_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File '{upload.filename}' exceeds the {settings.max_document_bytes // (1024 * 1024)} MB limit.",
            )
        if not content:
            raise HTTPException(status_code=400, detail=f"File '{upload.filename}' is empty.")
        documents.append((content, declared_type))

    try:
        batch = await orchestrator.submit_documents(subject_id, documents)
    except VerificationError as exc:
        raise _http_error(exc) from exc

    logger.info(
        "api.verification.documents",
        subject_id=subject_id,
        count=len(documents),
        verified=batch.verified,
    )
    return batch


@router.post("/identity", response_model=IdentityVerdict)
async def verify_identity(body: IdentityRequest, request: Request) -> IdentityVerdict:
    orchestrator = _get_orchestrator(request)
    try:
        verdict = await orchestrator.verify_identity(body.subject_id, email=body.email, phone=body.phone)
    except VerificationError as exc:
        raise _http_error(exc) from exc

    logger.info("api.verification.identity", subject_id=body.subject_id, verified=verdict.verified)
    return verdict


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/status/{subject_id}", response_model=VerificationStatusView)
async def get_verification_status(subject_id: str, request: Request) -> VerificationStatusView:
    """Status projection; all-false / pending when no record exists."""
    orchestrator = _get_orchestrator(request)
    try:
        return await orchestrator.get_status(subject_id)
    except VerificationError as exc:
        raise _http_error(exc) from exc


@router.get("/record/{subject_id}", response_model=VerificationRecord)
async def get_verification_record(subject_id: str, request: Request) -> VerificationRecord:
    orchestrator = _get_orchestrator(request)
    try:
        record = await orchestrator.get_record(subject_id)
    except VerificationError as exc:
        raise _http_error(exc) from exc

    if record is None:
        raise HTTPException(
            status_code=404,
            detail=f"No verification record found for subject '{subject_id}'.",
        )
    return record
