"""Job listing routes.

Endpoints for browsing listings, applying, quoting deposits and running the
approval saga. Everything delegates to the listing service and the approval
orchestrator.
"""

from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from checkpay.listings import Application, JobListing
from checkpay.parties import same_party

from ..auth import CurrentParty
from ..dependencies import Services
from ..logging_config import get_logger, log_request
from ..rate_limit import READ_LIMIT, WRITE_LIMIT, get_party_key, limiter

logger = get_logger("checkpay.api.jobs")
router = APIRouter(prefix="/jobs", tags=["jobs"])


# =============================================================================
# Request/Response Models
# =============================================================================


class ListingCreate(BaseModel):
    """Request to post a listing."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=5000)
    job_type: str = Field("fixed", min_length=1, max_length=50)
    deadline: datetime
    min_price_usd: Decimal = Field(..., gt=0)
    max_price_usd: Decimal = Field(..., gt=0)
    settlement_asset: str = Field(..., min_length=1, max_length=20)

    @field_validator("deadline")
    @classmethod
    def deadline_must_be_future(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("Deadline must be in the future")
        return v


class ListingResponse(BaseModel):
    """Listing details response."""

    job_id: int
    client_id: str
    title: str
    description: str
    job_type: str
    deadline: datetime
    min_price_usd: Decimal
    max_price_usd: Decimal
    settlement_asset: str
    created_at: datetime
    is_active: bool
    is_expired: bool
    escrow_ref: str | None = None
    approved_application_index: int | None = None
    application_count: int = 0


class ListingListResponse(BaseModel):
    listings: list[ListingResponse]
    total: int


class ApplicationCreate(BaseModel):
    """Request to apply to a listing.

    ``cancellation_window`` is a number of days or text such as "48 hours".
    """

    proposed_price_usd: Decimal = Field(..., gt=0)
    cancellation_window: int | str
    estimated_delivery: str = Field(..., min_length=1, max_length=100)
    portfolio_link: str = Field("", max_length=500)


class ApplicationResponse(BaseModel):
    job_id: int
    index: int
    freelancer_id: str
    proposed_price_usd: Decimal
    cancellation_window_days: int
    estimated_delivery: str
    portfolio_link: str
    applied_at: datetime
    is_approved: bool


class ApplicationListResponse(BaseModel):
    applications: list[ApplicationResponse]
    total: int


class QuoteResponse(BaseModel):
    """Deposit the escrow would be funded with right now."""

    amount_usd: Decimal
    asset: str
    amount: str
    source: str
    usd_per_unit: str
    as_of: datetime | None = None


class ApprovalResponse(BaseModel):
    job_id: int
    application_index: int
    escrow_id: str
    settlement_asset: str
    deposited_amount: str
    executed_steps: list[str]
    skipped_steps: list[str]
    transactions: dict[str, str]


class ApprovalProgressResponse(BaseModel):
    job_id: int
    application_index: int
    escrow_id: str | None = None
    completed_steps: list[str]
    next_step: str | None = None
    is_complete: bool
    is_degraded: bool


class EngagementResponse(BaseModel):
    job_id: int
    title: str
    client_id: str
    freelancer_id: str
    application_index: int
    escrow_ref: str | None = None


def to_listing_response(listing: JobListing) -> ListingResponse:
    """Convert a listing to its API response."""
    return ListingResponse(
        job_id=listing.job_id,
        client_id=listing.client_id,
        title=listing.title,
        description=listing.description,
        job_type=listing.job_type,
        deadline=listing.deadline,
        min_price_usd=listing.price_range_usd.min,
        max_price_usd=listing.price_range_usd.max,
        settlement_asset=listing.settlement_asset,
        created_at=listing.created_at,
        is_active=listing.is_active,
        is_expired=listing.is_expired(datetime.now(timezone.utc)),
        escrow_ref=listing.escrow_ref,
        approved_application_index=listing.approved_application_index,
        application_count=len(listing.applications),
    )


def to_application_response(application: Application) -> ApplicationResponse:
    return ApplicationResponse(**application.to_dict())


# =============================================================================
# Routes
# =============================================================================


@router.post("", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(WRITE_LIMIT, key_func=get_party_key)
def create_listing(request: Request, body: ListingCreate, auth: CurrentParty, services: Services):
    """Post a new listing as the authenticated client."""
    log_request(logger, "POST", "/jobs", auth.party_id)
    listing = services.listings.create_listing(
        client_id=auth.party_id,
        title=body.title,
        description=body.description,
        job_type=body.job_type,
        deadline=body.deadline,
        min_price_usd=body.min_price_usd,
        max_price_usd=body.max_price_usd,
        settlement_asset=body.settlement_asset,
    )
    return to_listing_response(listing)


@router.get("", response_model=ListingListResponse)
@limiter.limit(READ_LIMIT)
def list_listings(
    request: Request,
    auth: CurrentParty,
    services: Services,
    active_only: bool = Query(False),
    client_id: str | None = Query(None),
):
    """
    List listings from a fresh projection of the registry.

    ``active_only`` keeps listings still accepting applications, soonest
    deadline first.
    """
    projection = services.projection
    projection.refresh()
    if active_only:
        listings = projection.active_listings(datetime.now(timezone.utc))
    else:
        listings = projection.all_listings()
    if client_id:
        listings = [listing for listing in listings if same_party(listing.client_id, client_id)]
    return ListingListResponse(
        listings=[to_listing_response(listing) for listing in listings],
        total=len(listings),
    )


@router.get("/engagements", response_model=list[EngagementResponse])
@limiter.limit(READ_LIMIT)
def my_engagements(request: Request, auth: CurrentParty, services: Services):
    """Approved jobs where the caller is the client or the freelancer."""
    services.projection.refresh()
    return [
        EngagementResponse(**e.to_dict())
        for e in services.projection.engagements_for(auth.party_id)
    ]


@router.get("/{job_id}", response_model=ListingResponse)
@limiter.limit(READ_LIMIT)
def get_listing(request: Request, job_id: int, auth: CurrentParty, services: Services):
    return to_listing_response(services.listings.get_listing(job_id))


@router.post("/{job_id}/deactivate", response_model=ListingResponse)
@limiter.limit(WRITE_LIMIT, key_func=get_party_key)
def deactivate_listing(request: Request, job_id: int, auth: CurrentParty, services: Services):
    """Close a listing to new applications (client only, before approval)."""
    log_request(logger, "POST", f"/jobs/{job_id}/deactivate", auth.party_id)
    return to_listing_response(services.listings.deactivate(job_id, auth.party_id))


@router.get("/{job_id}/applications", response_model=ApplicationListResponse)
@limiter.limit(READ_LIMIT)
def list_applications(request: Request, job_id: int, auth: CurrentParty, services: Services):
    applications = services.listings.get_applications(job_id)
    return ApplicationListResponse(
        applications=[to_application_response(app) for app in applications],
        total=len(applications),
    )


@router.post(
    "/{job_id}/applications",
    response_model=ApplicationResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(WRITE_LIMIT, key_func=get_party_key)
def apply_to_listing(
    request: Request,
    job_id: int,
    body: ApplicationCreate,
    auth: CurrentParty,
    services: Services,
):
    """Apply to a listing as the authenticated freelancer."""
    log_request(logger, "POST", f"/jobs/{job_id}/applications", auth.party_id)
    application = services.listings.apply(
        job_id=job_id,
        freelancer_id=auth.party_id,
        proposed_price_usd=body.proposed_price_usd,
        cancellation_window_days=body.cancellation_window,
        estimated_delivery=body.estimated_delivery,
        portfolio_link=body.portfolio_link,
    )
    return to_application_response(application)


@router.get("/{job_id}/quote", response_model=QuoteResponse)
@limiter.limit(READ_LIMIT)
def quote_deposit(
    request: Request,
    job_id: int,
    auth: CurrentParty,
    services: Services,
    amount_usd: Decimal = Query(..., gt=0),
):
    """Convert a USD price into the listing's settlement asset at the current rate."""
    listing = services.listings.get_listing(job_id)
    conversion = services.normalizer.quote(amount_usd, listing.settlement_asset)
    return QuoteResponse(**conversion.to_dict())


@router.post("/{job_id}/applications/{index}/approve", response_model=ApprovalResponse)
@limiter.limit(WRITE_LIMIT, key_func=get_party_key)
def approve_application(
    request: Request,
    job_id: int,
    index: int,
    auth: CurrentParty,
    services: Services,
):
    """
    Approve an application and fund its escrow.

    Safe to call again after a failure: completed steps are detected on the
    ledger and skipped.
    """
    log_request(logger, "POST", f"/jobs/{job_id}/applications/{index}/approve", auth.party_id)
    result = services.orchestrator.approve_application(job_id, index, auth.party_id)
    return ApprovalResponse(**result.to_dict())


@router.get("/{job_id}/approval", response_model=ApprovalProgressResponse)
@limiter.limit(READ_LIMIT)
def approval_progress(
    request: Request,
    job_id: int,
    auth: CurrentParty,
    services: Services,
    application_index: int | None = Query(None, ge=0),
):
    """Saga progress for an application (defaults to the approved one, else 0)."""
    if application_index is None:
        listing = services.listings.get_listing(job_id)
        approved = listing.approved_application_index
        application_index = approved if approved is not None else 0
    progress = services.orchestrator.describe_progress(job_id, application_index)
    return ApprovalProgressResponse(**progress.to_dict())
