"""
Enrollment API endpoints.

The kiosk opens a session, then posts one capture per finger placement. The
third capture merges the samples on the device and stores the template.
"""

import structlog
from fastapi import APIRouter, Depends

from timestation.errors import SessionNotFound
from timestation.models.api_models import (
    EnrollmentStartRequest,
    EnrollmentStatusResponse,
    ErrorDetail,
    ErrorResponse,
)
from timestation.services.enrollment import (
    EnrollmentService,
    EnrollmentSession,
    EnrollmentStep,
    get_enrollment_service,
)

logger = structlog.get_logger()
router = APIRouter(
    prefix="/api/v1/enrollments",
    tags=["enrollment"],
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    }
)


def to_status_response(session: EnrollmentSession) -> EnrollmentStatusResponse:
    error = session.last_error
    return EnrollmentStatusResponse(
        sessionId=session.session_id,
        subjectId=session.subject_id,
        step=session.step.value,
        captureNumber=session.capture_number if session.step is EnrollmentStep.AWAITING_CAPTURE else 0,
        capturesRequired=session.captures_required,
        samplesCaptured=len(session.samples),
        attempt=session.attempt,
        prompt=session.prompt,
        error=ErrorDetail(code=error.code, message=error.message) if error else None,
        recovery=session.recovery.value
    )


@router.post("", response_model=EnrollmentStatusResponse, status_code=201)
async def start_enrollment(
    request: EnrollmentStartRequest,
    service: EnrollmentService = Depends(get_enrollment_service)
) -> EnrollmentStatusResponse:
    """Open an enrollment session for an employee."""
    logger.info("Enrollment start requested", subject_id=request.subjectId)
    session = await service.start(request.subjectId)
    return to_status_response(session)


@router.get("/{subject_id}", response_model=EnrollmentStatusResponse)
async def get_enrollment(
    subject_id: str,
    service: EnrollmentService = Depends(get_enrollment_service)
) -> EnrollmentStatusResponse:
    return to_status_response(service.get_session(subject_id))


@router.post("/{subject_id}/capture", response_model=EnrollmentStatusResponse)
async def capture(
    subject_id: str,
    service: EnrollmentService = Depends(get_enrollment_service)
) -> EnrollmentStatusResponse:
    """
    Take the next capture for the session.

    A failed capture is reported in the body with recovery "retry_capture";
    the session stays on the same capture number.
    """
    session = await service.capture(subject_id)
    logger.info(
        "Enrollment capture processed",
        subject_id=subject_id,
        step=session.step.value,
        samples=len(session.samples),
        error_code=session.last_error.code if session.last_error else None
    )
    return to_status_response(session)


@router.post("/{subject_id}/retry", response_model=EnrollmentStatusResponse)
async def retry(
    subject_id: str,
    service: EnrollmentService = Depends(get_enrollment_service)
) -> EnrollmentStatusResponse:
    """Recover a failed session (persist-only retry or a fresh attempt)."""
    session = await service.retry(subject_id)
    return to_status_response(session)


@router.delete("/{subject_id}", status_code=204)
async def close_enrollment(
    subject_id: str,
    service: EnrollmentService = Depends(get_enrollment_service)
) -> None:
    if not service.close(subject_id):
        raise SessionNotFound()
    logger.info("Enrollment session closed", subject_id=subject_id)
