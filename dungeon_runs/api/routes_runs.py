import logging
from typing import Optional

from fastapi import APIRouter, Depends

from dungeon_runs.api.deps import get_rate_limiter, get_run_creation_service, get_run_store
from dungeon_runs.core.errors import InvalidRunRequest, RunCreationFailed, RunError, RunNotFound
from dungeon_runs.models.dungeon import dungeon_to_dict
from dungeon_runs.models.run import run_to_dict
from dungeon_runs.schemas.runs import CreateRunIn
from dungeon_runs.services.rate_limiter import RateLimiter
from dungeon_runs.services.run_creation import CREATE_FAILED, RunCreationService
from dungeon_runs.services.run_store import RunStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/runs", tags=["runs"])

WALLET_REQUIRED = "Wallet address required"


@router.post("")
async def create_run(
    body: Optional[CreateRunIn] = None,
    service: RunCreationService = Depends(get_run_creation_service),
):
    body = body or CreateRunIn()
    try:
        return await service.create_run(
            dungeon_id=body.dungeon_id,
            party=body.party,
            seed=body.seed,
            wallet_address=body.wallet_address,
            payment_hash=body.payment_hash,
        )
    except RunError:
        raise
    except Exception as e:
        logger.error(f"Error creating run: {e}")
        raise RunCreationFailed(CREATE_FAILED) from e


@router.get("")
async def active_run(wallet: Optional[str] = None, runs: RunStore = Depends(get_run_store)):
    if not wallet:
        raise InvalidRunRequest(WALLET_REQUIRED)
    try:
        run = await runs.get_active_run(wallet)
    except Exception as e:
        logger.error(f"Error fetching active run for {wallet}: {e}")
        raise RunError("Failed to fetch active runs") from e
    return {"activeRun": run_to_dict(run) if run else None}


@router.get("/stats")
async def run_stats(wallet: Optional[str] = None, limiter: RateLimiter = Depends(get_rate_limiter)):
    if not wallet:
        raise InvalidRunRequest(WALLET_REQUIRED)
    return await limiter.usage(wallet)


@router.get("/{run_id}")
async def get_run(run_id: str, runs: RunStore = Depends(get_run_store)):
    found = await runs.get_with_dungeon(run_id)
    if found is None:
        raise RunNotFound("Run not found")
    run, dungeon = found
    return {**run_to_dict(run), "dungeon": dungeon_to_dict(dungeon) if dungeon else None}
