"""Service wiring for the Checkpay backend.

The API is a thin proxy: every route delegates to the orchestrator, the
checkpoint workflow or the listing service. In this deployment they run over
a process-local ``InMemoryLedger``; tests override ``get_services``.
"""

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Callable, Optional

from fastapi import Depends

from checkpay.config import CommerceConfig
from checkpay.escrow import CheckpointWorkflow
from checkpay.ledger import InMemoryLedger, Ledger
from checkpay.listings import ListingProjection, ListingService
from checkpay.orchestrator import ApprovalLog, ApprovalOrchestrator, FileApprovalLog, InMemoryApprovalLog
from checkpay.pricing import FixedRateOracle, PriceNormalizer, PriceOracle
from checkpay.store import (
    ContentStore,
    DeliverableUploader,
    InMemoryContentStore,
    IpfsContentStore,
    watermark_preview,
)

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("checkpay.api.dependencies")


@dataclass
class CommerceServices:
    """Everything a route needs, built once per process."""

    config: CommerceConfig
    ledger: Ledger
    normalizer: PriceNormalizer
    listings: ListingService
    projection: ListingProjection
    orchestrator: ApprovalOrchestrator
    workflow: CheckpointWorkflow
    uploader: DeliverableUploader


def build_services(
    config: CommerceConfig,
    ledger: Ledger,
    oracle: PriceOracle,
    content_store: ContentStore,
    approval_log: Optional[ApprovalLog] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> CommerceServices:
    """Assemble the core services over the given collaborators."""
    normalizer = PriceNormalizer(oracle, config, clock=clock)
    return CommerceServices(
        config=config,
        ledger=ledger,
        normalizer=normalizer,
        listings=ListingService(ledger, config, clock=clock),
        projection=ListingProjection(ledger),
        orchestrator=ApprovalOrchestrator(
            ledger, normalizer, config, approval_log=approval_log, clock=clock
        ),
        workflow=CheckpointWorkflow(ledger, config, clock=clock),
        uploader=DeliverableUploader(content_store, preview_renderer=watermark_preview),
    )


@lru_cache
def get_services() -> CommerceServices:
    """Process-wide services over the development ledger."""
    settings = get_settings()
    config = CommerceConfig.from_env()

    if settings.use_ipfs:
        content_store = IpfsContentStore(config.ipfs_api_url, config.ipfs_gateway_url)
    else:
        content_store = InMemoryContentStore()
    approval_log = FileApprovalLog() if settings.persist_approval_log else InMemoryApprovalLog()

    logger.info(
        f"Wiring services | chain={config.chain} | ipfs={settings.use_ipfs} "
        f"| assets={config.asset_registry.symbols()}"
    )
    return build_services(
        config=config,
        ledger=InMemoryLedger(config),
        oracle=FixedRateOracle(settings.dev_rates_usd),
        content_store=content_store,
        approval_log=approval_log,
    )


Services = Annotated[CommerceServices, Depends(get_services)]
