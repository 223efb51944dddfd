from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.activity.backend import ActivityBackend, build_activity_backend
from app.activity.errors import ActivityError
from app.activity.schemas import (
    ActivityListOptions,
    ActivityPage,
    CancelActivityRequest,
    CompleteActivityRequest,
    DemoCreate,
    LeadRestoreRead,
    LogActivityCreate,
    MeetingCreate,
    ReminderCreate,
    Timeline,
    UnifiedActivity,
    UpdateLoggedActivityRequest,
)
from app.activity.service import ActivityService, ActorUser
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db

activities_router = APIRouter(prefix="/api/activities", tags=["activities"])
leads_router = APIRouter(prefix="/api/leads", tags=["activities.leads"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def activity_error_response(request: Request, exc: ActivityError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        username=auth_user.username,
        correlation_id=correlation_id,
    )


def get_activity_backend(db: Session = Depends(get_db)) -> ActivityBackend:
    return build_activity_backend(db)


def get_activity_service(backend: ActivityBackend = Depends(get_activity_backend)) -> ActivityService:
    return ActivityService(backend, timeline_max_workers=get_settings().activity_timeline_max_workers)


@activities_router.get("", response_model=ActivityPage)
def list_activities(
    request: Request,
    page: int = Query(default=1),
    page_size: int | None = Query(default=None),
    search: str | None = Query(default=None),
    filter_name: str | None = Query(default="all", alias="filter"),
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> ActivityPage | JSONResponse:
    try:
        require_permission(user, "activities.read")
        return service.list_activities(page, page_size, search, filter_name)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.get("/options", response_model=ActivityListOptions)
def list_options(
    request: Request,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> ActivityListOptions | JSONResponse:
    try:
        require_permission(user, "activities.read")
        return service.list_options()
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_options_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.get("/{activity_id}", response_model=UnifiedActivity)
def get_activity(
    request: Request,
    activity_id: str,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> UnifiedActivity | JSONResponse:
    try:
        require_permission(user, "activities.read")
        return service.view_details(activity_id)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.post("/{activity_id}/done", response_model=UnifiedActivity)
def mark_activity_done(
    request: Request,
    activity_id: str,
    dto: CompleteActivityRequest,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> UnifiedActivity | JSONResponse:
    try:
        require_permission(user, "activities.complete")
        return service.mark_as_done(user, activity_id, dto.outcome_notes, dto.duration_minutes)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_complete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.patch("/{activity_id}", response_model=UnifiedActivity)
def update_activity(
    request: Request,
    activity_id: str,
    dto: UpdateLoggedActivityRequest,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> UnifiedActivity | JSONResponse:
    try:
        require_permission(user, "activities.write")
        return service.edit(user, activity_id, dto.details)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@activities_router.post("/{activity_id}/cancel", response_model=UnifiedActivity)
def cancel_activity(
    request: Request,
    activity_id: str,
    dto: CancelActivityRequest | None = Body(default=None),
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> UnifiedActivity | JSONResponse:
    try:
        require_permission(user, "activities.cancel")
        return service.cancel_or_delete(user, activity_id, dto.reason if dto is not None else None)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_cancel_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/{lead_id}/timeline", response_model=Timeline)
def get_lead_timeline(
    request: Request,
    lead_id: int,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> Timeline | JSONResponse:
    try:
        require_permission(user, "activities.read")
        return service.view_history(lead_id)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_timeline_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/activities", response_model=UnifiedActivity, status_code=status.HTTP_201_CREATED)
def log_activity(
    request: Request,
    lead_id: int,
    dto: LogActivityCreate,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> UnifiedActivity | JSONResponse:
    try:
        require_permission(user, "activities.write")
        return service.log_activity(user, lead_id, dto)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/reminders", response_model=UnifiedActivity, status_code=status.HTTP_201_CREATED)
def schedule_reminder(
    request: Request,
    lead_id: int,
    dto: ReminderCreate,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> UnifiedActivity | JSONResponse:
    try:
        require_permission(user, "activities.write")
        return service.schedule_reminder(user, lead_id, dto)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/meetings", response_model=UnifiedActivity, status_code=status.HTTP_201_CREATED)
def schedule_meeting(
    request: Request,
    lead_id: int,
    dto: MeetingCreate,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> UnifiedActivity | JSONResponse:
    try:
        require_permission(user, "activities.write")
        return service.schedule_meeting(user, lead_id, dto)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/demos", response_model=UnifiedActivity, status_code=status.HTTP_201_CREATED)
def schedule_demo(
    request: Request,
    lead_id: int,
    dto: DemoCreate,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> UnifiedActivity | JSONResponse:
    try:
        require_permission(user, "activities.write")
        return service.schedule_demo(user, lead_id, dto)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="activity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/restore", response_model=LeadRestoreRead)
def restore_lead(
    request: Request,
    lead_id: int,
    service: ActivityService = Depends(get_activity_service),
    user: ActorUser = Depends(get_current_user),
) -> LeadRestoreRead | JSONResponse:
    try:
        require_permission(user, "leads.restore")
        return service.restore_lead(user, lead_id)
    except ActivityError as exc:
        return activity_error_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_restore_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
