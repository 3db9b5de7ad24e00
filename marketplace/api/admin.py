"""Admin endpoints for rate-limit violations and IP blocks."""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from redis.exceptions import RedisError

from marketplace.api.deps import get_admin_principal, get_ip_blocker, standard_rate_limit
from marketplace.auth import Principal
from marketplace.schemas.security import BlockResponse, ManualBlockRequest, ViolationResponse
from marketplace.services.ip_blocker import BlockRecord, IPBlocker

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/security",
    tags=["admin"],
    dependencies=[Depends(standard_rate_limit)],
)


def _block_response(record: BlockRecord, blocker: IPBlocker) -> BlockResponse:
    return BlockResponse(
        identifier=record.identifier,
        blocked_at=record.blocked_at,
        expires_at=record.expires_at,
        violations=record.violations,
        reason=record.reason,
        remaining_seconds=record.remaining_seconds(blocker.clock()),
    )


def _store_unavailable(e: RedisError) -> HTTPException:
    logger.error(f"❌ Block store unavailable: {e}", exc_info=True)
    return HTTPException(status_code=503, detail="Block store unavailable")


@router.get("/blocks", response_model=List[BlockResponse])
async def list_blocks(
    admin: Principal = Depends(get_admin_principal),
    blocker: IPBlocker = Depends(get_ip_blocker),
):
    """List identifiers that are currently blocked."""
    try:
        records = await blocker.list_blocked()
    except RedisError as e:
        raise _store_unavailable(e) from e
    return [_block_response(record, blocker) for record in records]


@router.post("/blocks", response_model=BlockResponse, status_code=201)
async def block_identifier(
    block: ManualBlockRequest,
    admin: Principal = Depends(get_admin_principal),
    blocker: IPBlocker = Depends(get_ip_blocker),
):
    """Block an identifier for a fixed duration, regardless of violations."""
    try:
        record = await blocker.manual_block(
            block.identifier, block.duration_seconds, block.reason
        )
    except RedisError as e:
        raise _store_unavailable(e) from e
    logger.info(f"🛡️ {admin.user_id} blocked {block.identifier} for {block.duration_seconds}s")
    return _block_response(record, blocker)


@router.delete("/blocks/{identifier}", status_code=204)
async def unblock_identifier(
    identifier: str,
    admin: Principal = Depends(get_admin_principal),
    blocker: IPBlocker = Depends(get_ip_blocker),
):
    """Lift a block and clear the identifier's violation history."""
    try:
        removed = await blocker.unblock(identifier)
    except RedisError as e:
        raise _store_unavailable(e) from e
    if not removed:
        raise HTTPException(status_code=404, detail="Identifier is not blocked")
    logger.info(f"🛡️ {admin.user_id} unblocked {identifier}")
    return None


@router.get("/violations/{identifier}", response_model=ViolationResponse)
async def get_violations(
    identifier: str,
    admin: Principal = Depends(get_admin_principal),
    blocker: IPBlocker = Depends(get_ip_blocker),
):
    try:
        record = await blocker.get_violations(identifier)
    except RedisError as e:
        raise _store_unavailable(e) from e
    if record is None:
        return ViolationResponse(identifier=identifier, count=0)
    return ViolationResponse(**record.__dict__)


@router.delete("/violations/{identifier}", status_code=204)
async def clear_violations(
    identifier: str,
    admin: Principal = Depends(get_admin_principal),
    blocker: IPBlocker = Depends(get_ip_blocker),
):
    try:
        await blocker.clear_violations(identifier)
    except RedisError as e:
        raise _store_unavailable(e) from e
    return None
