"""
Verification API endpoints for clock-in/out and leave authorization.

Each request looks the employee up in the record store, then runs a whole
verification attempt: fetch template, capture, match and commit. Failures
of the attempt itself come back in the body with a recovery action; request
level problems (unknown employee, session conflict) are HTTP errors.
"""

import time

import structlog
from fastapi import APIRouter, Depends

from timestation.clients.record_store_client import RecordStoreClient, get_record_store_client
from timestation.errors import SessionNotFound
from timestation.models.api_models import (
    ClockRequest,
    ErrorDetail,
    ErrorResponse,
    LeaveRequestBody,
    VerificationResponse,
)
from timestation.models.internal_models import LeaveRequest, VerificationAction
from timestation.services.verification import (
    VerificationAttempt,
    VerificationService,
    VerificationStep,
    get_verification_service,
)

logger = structlog.get_logger()
router = APIRouter(
    prefix="/api/v1/verifications",
    tags=["verification"],
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    }
)

SUCCESS_MESSAGES = {
    VerificationAction.CLOCK_IN: "Clock-in recorded",
    VerificationAction.CLOCK_OUT: "Clock-out recorded",
    VerificationAction.AUTHORIZE_LEAVE: "Leave request submitted",
}


def to_verification_response(attempt: VerificationAttempt) -> VerificationResponse:
    success = attempt.step is VerificationStep.SUCCEEDED
    error = attempt.last_error
    if success:
        message = (attempt.record.message if attempt.record else None) or SUCCESS_MESSAGES[attempt.action]
    elif error is not None:
        message = error.message
    else:
        message = f"Verification {attempt.step.value}"

    return VerificationResponse(
        sessionId=attempt.session_id,
        subjectId=attempt.subject_id,
        action=attempt.action.value,
        success=success,
        step=attempt.step.value,
        matched=attempt.matched,
        score=attempt.match.score if attempt.match else None,
        recordId=attempt.record.record_id if attempt.record else None,
        verifiedAt=attempt.verified_at,
        message=message,
        error=ErrorDetail(code=error.code, message=error.message) if error else None,
        recovery=attempt.recovery.value
    )


@router.post("/clock", response_model=VerificationResponse)
async def clock(
    request: ClockRequest,
    service: VerificationService = Depends(get_verification_service),
    store: RecordStoreClient = Depends(get_record_store_client)
) -> VerificationResponse:
    """Verify an employee's fingerprint and record a clock-in or clock-out."""
    start_time = time.time()
    logger.info("Clock request received", subject_id=request.subjectId, action=request.action.value)

    subject = await store.lookup_subject(request.subjectId)
    attempt = await service.verify(subject, request.action)

    logger.info(
        "Clock request completed",
        subject_id=request.subjectId,
        action=request.action.value,
        step=attempt.step.value,
        processing_time_ms=round((time.time() - start_time) * 1000, 2)
    )
    return to_verification_response(attempt)


@router.post("/leave", response_model=VerificationResponse)
async def authorize_leave(
    request: LeaveRequestBody,
    service: VerificationService = Depends(get_verification_service),
    store: RecordStoreClient = Depends(get_record_store_client)
) -> VerificationResponse:
    """Verify an employee's fingerprint and submit a leave request."""
    logger.info("Leave request received", subject_id=request.subjectId, leave_type=request.leaveType)

    leave = LeaveRequest(
        leave_type=request.leaveType,
        start_date=request.startDate,
        end_date=request.endDate,
        reason=request.reason
    )
    subject = await store.lookup_subject(request.subjectId)
    attempt = await service.verify(subject, VerificationAction.AUTHORIZE_LEAVE, leave=leave)
    return to_verification_response(attempt)


@router.post("/{subject_id}/retry-commit", response_model=VerificationResponse)
async def retry_commit(
    subject_id: str,
    service: VerificationService = Depends(get_verification_service)
) -> VerificationResponse:
    """Retry writing the record of an already verified attempt. No recapture."""
    attempt = await service.retry_commit(subject_id)
    return to_verification_response(attempt)


@router.delete("/{subject_id}", status_code=204)
async def cancel_verification(
    subject_id: str,
    service: VerificationService = Depends(get_verification_service)
) -> None:
    if not service.cancel(subject_id):
        raise SessionNotFound()
