"""
Ledger interface.

The ledger (listing registry, escrow factory and escrow units on chain) is
the single source of truth for listings, applications and escrow state.
Mutations block until the transaction is confirmed and return a receipt;
reads return copies the caller may inspect freely.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional, Protocol

from checkpay.ledger.events import TransactionReceipt

if TYPE_CHECKING:
    from checkpay.escrow.models import EscrowUnit
    from checkpay.listings.models import Application, JobListing, PriceRange


@dataclass(frozen=True)
class ListingParams:
    """Arguments for creating a listing."""

    client_id: str
    title: str
    description: str
    job_type: str
    deadline: datetime
    price_range_usd: PriceRange
    settlement_asset: str


@dataclass(frozen=True)
class ApplicationParams:
    """Arguments for applying to a listing."""

    job_id: int
    freelancer_id: str
    proposed_price_usd: Decimal
    cancellation_window_days: int
    estimated_delivery: str
    portfolio_link: str = ""


@dataclass(frozen=True)
class EscrowParams:
    """Arguments for creating and funding an escrow in one transaction."""

    job_id: int
    application_index: int
    client_id: str
    freelancer_id: str
    final_price_usd: Decimal
    settlement_asset: str
    deposited_amount: int
    cancellation_window_days: int
    estimated_delivery_at: datetime


class Ledger(Protocol):
    """Protocol for ledger backends."""

    # === Listing registry ===

    def create_listing(self, params: ListingParams) -> TransactionReceipt:
        """Register a listing. The ``LISTING_CREATED`` event carries the job id."""
        ...

    def apply_for_job(self, params: ApplicationParams) -> TransactionReceipt:
        """Append an application. The event carries its index."""
        ...

    def deactivate_listing(self, job_id: int, actor_id: str) -> TransactionReceipt:
        ...

    def mark_approved(self, job_id: int, application_index: int) -> TransactionReceipt:
        """Flip an application's ``is_approved``. Fails if another one is approved."""
        ...

    def bind_escrow(self, job_id: int, escrow_id: str) -> TransactionReceipt:
        """Record the escrow id on the listing."""
        ...

    def get_listing(self, job_id: int) -> Optional[JobListing]:
        ...

    def list_listings(self) -> List[JobListing]:
        ...

    def get_applications(self, job_id: int) -> List[Application]:
        ...

    # === Token ===

    def authorize_spend(self, owner: str, spender: str, asset: str, amount: int) -> TransactionReceipt:
        ...

    def get_allowance(self, owner: str, spender: str, asset: str) -> int:
        ...

    def get_balance(self, party: str, asset: str) -> int:
        ...

    # === Escrow factory ===

    def create_and_fund_escrow(self, params: EscrowParams) -> TransactionReceipt:
        """Deploy an escrow unit and pull the deposit from the client.

        The ``ESCROW_CREATED`` event carries the new escrow id.
        """
        ...

    def find_escrow_for_job(self, job_id: int) -> Optional[str]:
        """Escrow id created for ``job_id``, whether or not it is bound yet."""
        ...

    # === Escrow units ===

    def get_escrow(self, escrow_id: str) -> Optional[EscrowUnit]:
        ...

    def submit_checkpoint(
        self, escrow_id: str, index: int, deliverable: str, actor_id: str
    ) -> TransactionReceipt:
        """Submit a deliverable, given in the ``"<originalId>:<previewId>"`` form."""
        ...

    def approve_checkpoint(self, escrow_id: str, index: int, actor_id: str) -> TransactionReceipt:
        ...

    def reject_checkpoint(self, escrow_id: str, index: int, actor_id: str) -> TransactionReceipt:
        ...

    def cancel(self, escrow_id: str, actor_id: str) -> TransactionReceipt:
        ...

