"""Approval workflow API endpoints."""

from typing import List, Optional
from uuid import UUID
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status, Query
from pydantic import BaseModel

from fundflow.api.deps import get_current_user, get_approval_service, get_client_ip
from fundflow.db.models import User
from fundflow.core.approval import (
    ApprovalError,
    ApprovalService,
    ApprovalState,
    ApprovalTargetType,
    CorruptHistoryError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)

router = APIRouter(prefix="/approvals", tags=["approvals"])


# Schemas
class HistoryEntryResponse(BaseModel):
    state: str
    actor_id: str
    timestamp: datetime
    comment: Optional[str] = None
    old_value: Optional[float] = None
    new_value: Optional[float] = None


class ApprovalResponse(BaseModel):
    id: UUID
    target_type: str
    target_id: UUID
    current_state: str
    submitted_by: Optional[UUID]
    submitted_at: datetime
    finance_approved_by: Optional[UUID]
    finance_approved_at: Optional[datetime]
    finance_comment: Optional[str]
    committee_approved_by: Optional[UUID]
    committee_approved_at: Optional[datetime]
    committee_comment: Optional[str]
    rejected_by: Optional[UUID]
    rejected_at: Optional[datetime]
    rejection_reason: Optional[str]
    history: List[HistoryEntryResponse]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ApprovalListResponse(BaseModel):
    items: List[ApprovalResponse]
    total: int
    page: int
    per_page: int


class SubmitRequest(BaseModel):
    target_type: ApprovalTargetType
    target_id: UUID
    old_value: Optional[float] = None
    new_value: Optional[float] = None
    comment: Optional[str] = None


class ApprovalActionRequest(BaseModel):
    comment: Optional[str] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


def _http_error(error: ApprovalError) -> HTTPException:
    """Map an engine error onto the HTTP status callers expect."""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, UnauthorizedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, (InvalidTransitionError, CorruptHistoryError)):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(error))


def _offset(page: int, per_page: int) -> int:
    return (page - 1) * per_page


def _page(items: list, total: int, page: int, per_page: int) -> ApprovalListResponse:
    return ApprovalListResponse(
        items=[ApprovalResponse.model_validate(a) for a in items],
        total=total,
        page=page,
        per_page=per_page,
    )


# Endpoints
@router.post("", response_model=ApprovalResponse, status_code=status.HTTP_201_CREATED)
async def submit_approval(
    body: SubmitRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    service: ApprovalService = Depends(get_approval_service),
    current_user: User = Depends(get_current_user),
):
    """Submit a proposed change for review."""
    try:
        approval = service.submit(
            body.target_type,
            body.target_id,
            current_user,
            old_value=body.old_value,
            new_value=body.new_value,
            comment=body.comment,
            ip_address=get_client_ip(request),
        )
    except ApprovalError as e:
        raise _http_error(e)
    background_tasks.add_task(service.deliver_notifications)
    return ApprovalResponse.model_validate(approval)


@router.get("", response_model=ApprovalListResponse)
async def list_approvals(
    service: ApprovalService = Depends(get_approval_service),
    current_user: User = Depends(get_current_user),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    state: Optional[ApprovalState] = None,
    target_type: Optional[ApprovalTargetType] = None,
    target_id: Optional[UUID] = None,
    submitted_by: Optional[UUID] = None,
):
    """List approvals, newest first."""
    filters = dict(
        state=state,
        target_type=target_type,
        target_id=target_id,
        submitted_by=submitted_by,
    )
    approvals = service.list_approvals(offset=_offset(page, per_page), limit=per_page, **filters)
    return _page(approvals, service.count_approvals(**filters), page, per_page)


@router.get("/pending", response_model=ApprovalListResponse)
async def list_pending_approvals(
    service: ApprovalService = Depends(get_approval_service),
    current_user: User = Depends(get_current_user),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """List approvals waiting on the current user's role."""
    approvals = service.list_pending_for(current_user, offset=_offset(page, per_page), limit=per_page)
    return _page(approvals, service.count_pending_for(current_user), page, per_page)


@router.get("/{approval_id}", response_model=ApprovalResponse)
async def get_approval(
    approval_id: UUID,
    service: ApprovalService = Depends(get_approval_service),
    current_user: User = Depends(get_current_user),
):
    """Get a specific approval with its history."""
    try:
        approval = service.get_by_id(approval_id)
    except ApprovalError as e:
        raise _http_error(e)
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/finance-approve", response_model=ApprovalResponse)
async def finance_approve(
    approval_id: UUID,
    body: ApprovalActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    service: ApprovalService = Depends(get_approval_service),
    current_user: User = Depends(get_current_user),
):
    """Record the finance decision on a submitted change."""
    try:
        approval = service.finance_approve(
            approval_id,
            current_user,
            comment=body.comment,
            ip_address=get_client_ip(request),
        )
    except ApprovalError as e:
        raise _http_error(e)
    background_tasks.add_task(service.deliver_notifications)
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/committee-approve", response_model=ApprovalResponse)
async def committee_approve(
    approval_id: UUID,
    body: ApprovalActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    service: ApprovalService = Depends(get_approval_service),
    current_user: User = Depends(get_current_user),
):
    """Give final committee approval."""
    try:
        approval = service.committee_approve(
            approval_id,
            current_user,
            comment=body.comment,
            ip_address=get_client_ip(request),
        )
    except ApprovalError as e:
        raise _http_error(e)
    background_tasks.add_task(service.deliver_notifications)
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/reject", response_model=ApprovalResponse)
async def reject_approval(
    approval_id: UUID,
    body: RejectRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    service: ApprovalService = Depends(get_approval_service),
    current_user: User = Depends(get_current_user),
):
    """Reject a pending change. A reason is required."""
    try:
        approval = service.reject(
            approval_id,
            current_user,
            body.reason,
            ip_address=get_client_ip(request),
        )
    except ApprovalError as e:
        raise _http_error(e)
    background_tasks.add_task(service.deliver_notifications)
    return ApprovalResponse.model_validate(approval)
