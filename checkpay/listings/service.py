"""
Listing service.

Creates listings and applications on the ledger's listing registry and reads
them back. Input is checked here before any transaction is sent; the
registry enforces open/closed state again when the transaction lands.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Union

from checkpay.config import CommerceConfig
from checkpay.errors import (
    AlreadyApprovedError,
    ApplicationNotFoundError,
    CollaboratorFailure,
    CommerceError,
    DuplicateApplicationError,
    InvalidInputError,
    ListingClosedError,
    ListingNotFoundError,
    UnauthorizedError,
)
from checkpay.ledger.base import ApplicationParams, Ledger, ListingParams
from checkpay.ledger.events import LedgerEventType, TransactionReceipt
from checkpay.listings.models import (
    MAX_DESCRIPTION_LENGTH,
    MAX_TITLE_LENGTH,
    Application,
    JobListing,
    PriceRange,
    parse_cancellation_window,
)
from checkpay.parties import normalize_party, same_party

logger = logging.getLogger(__name__)


def _to_decimal(value, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"{name} must be a number, got {value!r}")


class ListingService:
    """Service for listing and application operations."""

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[CommerceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.config = config or CommerceConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # === Listings ===

    def create_listing(
        self,
        client_id: str,
        title: str,
        description: str,
        job_type: str,
        deadline: datetime,
        min_price_usd: Union[Decimal, str, int],
        max_price_usd: Union[Decimal, str, int],
        settlement_asset: str,
    ) -> JobListing:
        """Post a new listing.

        Raises:
            InvalidInputError: Bad title, deadline or price range
            UnknownAssetError: Settlement asset is not registered
        """
        client_id = normalize_party(client_id)
        if not title or not title.strip():
            raise InvalidInputError("Title cannot be empty")
        if len(title) > MAX_TITLE_LENGTH:
            raise InvalidInputError(f"Title too long (max {MAX_TITLE_LENGTH} characters)")
        if len(description or "") > MAX_DESCRIPTION_LENGTH:
            raise InvalidInputError(f"Description too long (max {MAX_DESCRIPTION_LENGTH} characters)")
        if deadline.tzinfo is None:
            raise InvalidInputError("Deadline must be timezone-aware")
        if deadline <= self._clock():
            raise InvalidInputError("Deadline must be in the future")

        try:
            price_range = PriceRange(
                _to_decimal(min_price_usd, "Minimum price"),
                _to_decimal(max_price_usd, "Maximum price"),
            )
        except ValueError as e:
            raise InvalidInputError(str(e)) from e

        asset = self.config.asset_registry.get(settlement_asset)

        receipt = self._send(
            "create_listing",
            lambda: self.ledger.create_listing(
                ListingParams(
                    client_id=client_id,
                    title=title.strip(),
                    description=description or "",
                    job_type=job_type,
                    deadline=deadline,
                    price_range_usd=price_range,
                    settlement_asset=asset.symbol,
                )
            ),
        )
        job_id = receipt.require_event(LedgerEventType.LISTING_CREATED).args["job_id"]
        logger.info(f"Listing {job_id} created by {client_id} ({asset.symbol})")
        return self.get_listing(job_id)

    def get_listing(self, job_id: int) -> JobListing:
        listing = self.ledger.get_listing(job_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {job_id} not found", job_id=job_id)
        return listing

    def list_listings(self) -> List[JobListing]:
        return self.ledger.list_listings()

    def deactivate(self, job_id: int, actor_id: str) -> JobListing:
        """Close a listing to new applications. Only before any approval."""
        listing = self.get_listing(job_id)
        if not same_party(actor_id, listing.client_id):
            raise UnauthorizedError(f"Only the client can deactivate listing {job_id}", job_id=job_id)
        if listing.approved_application is not None:
            raise AlreadyApprovedError(
                f"Listing {job_id} already has an approved application", job_id=job_id
            )
        if not listing.is_active:
            return listing

        self._send("deactivate_listing", lambda: self.ledger.deactivate_listing(job_id, actor_id))
        logger.info(f"Listing {job_id} deactivated by {actor_id}")
        return self.get_listing(job_id)

    # === Applications ===

    def apply(
        self,
        job_id: int,
        freelancer_id: str,
        proposed_price_usd: Union[Decimal, str, int],
        cancellation_window_days: Union[int, str],
        estimated_delivery: str,
        portfolio_link: str = "",
    ) -> Application:
        """Apply to a listing.

        ``cancellation_window_days`` may also be free text such as "48 hours".

        Raises:
            UnauthorizedError: Client applying to their own listing
            ListingClosedError: Inactive, expired or already approved
            DuplicateApplicationError: Freelancer already applied
            InvalidInputError: Bad price, window or delivery estimate
        """
        freelancer_id = normalize_party(freelancer_id)
        listing = self.get_listing(job_id)
        if same_party(freelancer_id, listing.client_id):
            raise UnauthorizedError("Cannot apply to your own listing", job_id=job_id)
        if not listing.is_open(self._clock()):
            raise ListingClosedError(f"Listing {job_id} is not accepting applications", job_id=job_id)
        if any(same_party(app.freelancer_id, freelancer_id) for app in listing.applications):
            raise DuplicateApplicationError(
                f"{freelancer_id} has already applied to listing {job_id}", job_id=job_id
            )

        price = _to_decimal(proposed_price_usd, "Proposed price")
        if price <= 0:
            raise InvalidInputError("Proposed price must be positive")
        if isinstance(cancellation_window_days, str):
            window = parse_cancellation_window(cancellation_window_days)
        else:
            window = int(cancellation_window_days)
        if window < 0:
            raise InvalidInputError("Cancellation window cannot be negative")
        if not estimated_delivery or not estimated_delivery.strip():
            raise InvalidInputError("Estimated delivery is required")

        receipt = self._send(
            "apply_for_job",
            lambda: self.ledger.apply_for_job(
                ApplicationParams(
                    job_id=job_id,
                    freelancer_id=freelancer_id,
                    proposed_price_usd=price,
                    cancellation_window_days=window,
                    estimated_delivery=estimated_delivery.strip(),
                    portfolio_link=portfolio_link or "",
                )
            ),
        )
        index = receipt.require_event(LedgerEventType.APPLICATION_SUBMITTED).args["application_index"]
        logger.info(f"Application {index} to listing {job_id} from {freelancer_id} at ${price}")
        return self.get_application(job_id, index)

    def get_applications(self, job_id: int) -> List[Application]:
        return self.get_listing(job_id).applications

    def get_application(self, job_id: int, index: int) -> Application:
        applications = self.get_applications(job_id)
        if not 0 <= index < len(applications):
            raise ApplicationNotFoundError(
                f"Application {index} not found for listing {job_id}", job_id=job_id
            )
        return applications[index]

    def _send(self, action: str, call: Callable[[], TransactionReceipt]) -> TransactionReceipt:
        try:
            receipt = call()
        except CommerceError:
            raise
        except Exception as e:
            logger.error(f"Ledger {action} failed: {e}")
            raise CollaboratorFailure(f"Ledger {action} failed: {e}") from e
        return receipt.require_success()
