"""Development-only routes.

Mounted only when ``debug`` is set: issue tokens for arbitrary parties and
credit test balances on the process-local ledger.
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from checkpay.ledger import InMemoryLedger

from ..auth import create_access_token
from ..config import Settings, get_settings
from ..dependencies import Services
from ..logging_config import get_logger
from ..rate_limit import WRITE_LIMIT, limiter

logger = get_logger("checkpay.api.dev")
router = APIRouter(prefix="/dev", tags=["dev"])


class TokenRequest(BaseModel):
    party_id: str = Field(..., min_length=1, max_length=100)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MintRequest(BaseModel):
    party_id: str = Field(..., min_length=1, max_length=100)
    asset: str = Field(..., min_length=1, max_length=20)
    amount: Decimal = Field(..., gt=0, description="Whole units of the asset")


class BalanceResponse(BaseModel):
    party_id: str
    asset: str
    balance: str


@router.post("/token", response_model=TokenResponse)
@limiter.limit(WRITE_LIMIT)
def issue_token(request: Request, body: TokenRequest, settings: Settings = Depends(get_settings)):
    logger.warning(f"Issuing development token for {body.party_id}")
    return TokenResponse(access_token=create_access_token(body.party_id, settings))


@router.post("/mint", response_model=BalanceResponse)
@limiter.limit(WRITE_LIMIT)
def mint(request: Request, body: MintRequest, services: Services):
    if not isinstance(services.ledger, InMemoryLedger):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Minting is only available on the in-memory ledger",
        )
    asset = services.config.asset_registry.get(body.asset)
    services.ledger.mint(body.party_id, asset.symbol, asset.to_base_units(body.amount))
    balance = services.ledger.get_balance(body.party_id, asset.symbol)
    logger.info(f"Minted {body.amount} {asset.symbol} to {body.party_id}")
    return BalanceResponse(party_id=body.party_id, asset=asset.symbol, balance=str(balance))
