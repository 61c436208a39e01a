"""Escrow routes.

Endpoints for reading an escrow and driving its checkpoints. Role and state
checks happen in the checkpoint workflow; core errors are mapped to HTTP
statuses by the app's error handler.
"""

import base64
import binascii
from datetime import datetime

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field, model_validator

from checkpay.escrow import CheckpointOutcome, EscrowUnit
from checkpay.escrow.models import ROLE_FREELANCER
from checkpay.store import DeliverableRef

from ..auth import CurrentParty
from ..dependencies import CommerceServices, Services
from ..logging_config import get_logger, log_request
from ..rate_limit import READ_LIMIT, WRITE_LIMIT, get_party_key, limiter

logger = get_logger("checkpay.api.escrow")
router = APIRouter(prefix="/escrow", tags=["escrow"])

MAX_UPLOAD_BYTES = 20 * 1024 * 1024


# =============================================================================
# Request/Response Models
# =============================================================================


class CheckpointResponse(BaseModel):
    index: int
    state: str  # pending, submitted, approved
    share_percent: int
    payout: str
    deliverable: str | None = None
    original_id: str | None = None
    preview_id: str | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None


class EscrowResponse(BaseModel):
    """Escrow details response. Amounts are base units of the settlement asset."""

    escrow_id: str
    job_id: int
    application_index: int
    client_id: str
    freelancer_id: str
    final_price_usd: str
    settlement_asset: str
    deposited_amount: str
    total_released: str
    refunded_amount: str
    remaining_balance: str
    funded_at: datetime
    estimated_delivery_at: datetime
    cancellation_opens_at: datetime
    is_cancelled: bool
    is_complete: bool
    can_cancel: bool
    next_index: int | None = None
    next_action: str | None = None
    checkpoints: list[CheckpointResponse]


class SubmitRequest(BaseModel):
    """Checkpoint submission.

    Either ``deliverable`` (an ``"<originalId>:<previewId>"`` reference to
    content already stored) or ``filename`` with ``content_base64`` to upload.
    """

    deliverable: str | None = Field(None, min_length=1, max_length=300)
    filename: str | None = Field(None, min_length=1, max_length=255)
    content_base64: str | None = None

    @model_validator(mode="after")
    def one_source(self) -> "SubmitRequest":
        has_ref = self.deliverable is not None
        has_upload = self.filename is not None and self.content_base64 is not None
        if has_ref == has_upload:
            raise ValueError("Provide either deliverable or filename with content_base64")
        return self


class OutcomeResponse(BaseModel):
    escrow_id: str
    action: str
    index: int | None = None
    amount: str
    tx_hash: str
    block_number: int
    escrow: EscrowResponse


def to_escrow_response(services: CommerceServices, escrow: EscrowUnit) -> EscrowResponse:
    view = services.workflow.status(escrow.escrow_id)
    data = view.to_dict()
    data.update(
        application_index=escrow.application_index,
        client_id=escrow.client_id,
        freelancer_id=escrow.freelancer_id,
        final_price_usd=str(escrow.final_price_usd),
        refunded_amount=str(escrow.refunded_amount),
        funded_at=escrow.funded_at,
        estimated_delivery_at=escrow.estimated_delivery_at,
    )
    return EscrowResponse(**data)


def to_outcome_response(services: CommerceServices, outcome: CheckpointOutcome) -> OutcomeResponse:
    return OutcomeResponse(
        **outcome.to_dict(),
        escrow=to_escrow_response(services, outcome.escrow),
    )


def _decode_upload(body: SubmitRequest) -> bytes:
    try:
        data = base64.b64decode(body.content_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="content_base64 is not valid base64",
        )
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Deliverable exceeds {MAX_UPLOAD_BYTES} bytes",
        )
    return data


# =============================================================================
# Routes
# =============================================================================


@router.get("/{escrow_id}", response_model=EscrowResponse)
@limiter.limit(READ_LIMIT)
def get_escrow(request: Request, escrow_id: str, auth: CurrentParty, services: Services):
    """Escrow state, payout schedule and per-checkpoint progress."""
    return to_escrow_response(services, services.workflow.get_escrow(escrow_id))


@router.post("/{escrow_id}/checkpoints/{index}/submit", response_model=OutcomeResponse)
@limiter.limit(WRITE_LIMIT, key_func=get_party_key)
def submit_checkpoint(
    request: Request,
    escrow_id: str,
    index: int,
    body: SubmitRequest,
    auth: CurrentParty,
    services: Services,
):
    """Submit a deliverable for a checkpoint (freelancer only)."""
    log_request(logger, "POST", f"/escrow/{escrow_id}/checkpoints/{index}/submit", auth.party_id)
    if body.deliverable is not None:
        try:
            ref = DeliverableRef.parse(body.deliverable)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    else:
        # Role and ordering are checked before the upload
        escrow = services.workflow.get_escrow(escrow_id)
        escrow.authorize(auth.party_id, ROLE_FREELANCER)
        escrow.check_submit(index)
        ref = services.uploader.upload(_decode_upload(body), body.filename)

    outcome = services.workflow.submit(escrow_id, index, ref, auth.party_id)
    return to_outcome_response(services, outcome)


@router.post("/{escrow_id}/checkpoints/{index}/approve", response_model=OutcomeResponse)
@limiter.limit(WRITE_LIMIT, key_func=get_party_key)
def approve_checkpoint(
    request: Request,
    escrow_id: str,
    index: int,
    auth: CurrentParty,
    services: Services,
):
    """Approve a submitted checkpoint and release its payout (client only)."""
    log_request(logger, "POST", f"/escrow/{escrow_id}/checkpoints/{index}/approve", auth.party_id)
    outcome = services.workflow.approve(escrow_id, index, auth.party_id)
    return to_outcome_response(services, outcome)


@router.post("/{escrow_id}/checkpoints/{index}/reject", response_model=OutcomeResponse)
@limiter.limit(WRITE_LIMIT, key_func=get_party_key)
def reject_checkpoint(
    request: Request,
    escrow_id: str,
    index: int,
    auth: CurrentParty,
    services: Services,
):
    """Send a submitted checkpoint back to pending (client only)."""
    log_request(logger, "POST", f"/escrow/{escrow_id}/checkpoints/{index}/reject", auth.party_id)
    outcome = services.workflow.reject(escrow_id, index, auth.party_id)
    return to_outcome_response(services, outcome)


@router.post("/{escrow_id}/cancel", response_model=OutcomeResponse)
@limiter.limit(WRITE_LIMIT, key_func=get_party_key)
def cancel_escrow(request: Request, escrow_id: str, auth: CurrentParty, services: Services):
    """Cancel after the cancellation window and refund the remaining balance."""
    log_request(logger, "POST", f"/escrow/{escrow_id}/cancel", auth.party_id)
    outcome = services.workflow.cancel(escrow_id, auth.party_id)
    return to_outcome_response(services, outcome)
