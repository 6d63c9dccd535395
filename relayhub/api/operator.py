from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import require_operator
from ..core.relayer import RelayerService, get_relayer_service

router = APIRouter()


@router.get("/health")
async def health(service: RelayerService = Depends(get_relayer_service)) -> Dict[str, Any]:
    return service.get_health()


@router.get("/status")
async def status(service: RelayerService = Depends(get_relayer_service)) -> Dict[str, Any]:
    return service.get_status()


@router.get("/failed-transactions")
async def list_failed_transactions(
    service: RelayerService = Depends(get_relayer_service),
) -> Dict[str, Any]:
    failed = service.list_failed()
    return {
        "count": len(failed),
        "transactions": [f.to_dict() for f in failed],
    }


@router.get("/failed-transactions/{command_id}")
async def get_failed_transaction(
    command_id: str,
    service: RelayerService = Depends(get_relayer_service),
) -> Dict[str, Any]:
    failed = service.get_failed(command_id)
    if failed is None:
        raise HTTPException(status_code=404, detail=f"No failed transaction for {command_id}")
    return failed.to_dict()


@router.post("/compensate/{command_id}")
async def compensate(
    command_id: str,
    action: str = Query("retry", pattern="^(retry|refund)$"),
    service: RelayerService = Depends(get_relayer_service),
    _operator: Any = Depends(require_operator),
) -> Dict[str, Any]:
    try:
        return await service.compensate(command_id, action=action)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"No failed transaction for {command_id}")
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/cancel/{command_id}")
async def cancel(
    command_id: str,
    service: RelayerService = Depends(get_relayer_service),
    _operator: Any = Depends(require_operator),
) -> Dict[str, Any]:
    if not service.cancel(command_id):
        raise HTTPException(
            status_code=409,
            detail=f"{command_id} is not queued; submitted commands cannot be cancelled",
        )
    return {"commandId": command_id, "cancelled": True}


@router.post("/start")
async def start(
    service: RelayerService = Depends(get_relayer_service),
    _operator: Any = Depends(require_operator),
) -> Dict[str, Any]:
    await service.start()
    return service.get_health()


@router.post("/emergency-stop")
async def emergency_stop(
    service: RelayerService = Depends(get_relayer_service),
    _operator: Any = Depends(require_operator),
) -> Dict[str, Any]:
    return await service.emergency_stop()


@router.get("/unpaid-batches")
async def list_unpaid_batches(
    chain: Optional[str] = Query(default=None),
    service: RelayerService = Depends(get_relayer_service),
    _operator: Any = Depends(require_operator),
) -> Dict[str, Any]:
    try:
        unpaid = await service.list_unpaid(chain)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"count": len(unpaid), "batches": [u.to_dict() for u in unpaid]}


@router.post("/settle/{chain}/{batch_id}")
async def settle_unpaid_batch(
    chain: str,
    batch_id: int,
    service: RelayerService = Depends(get_relayer_service),
    _operator: Any = Depends(require_operator),
) -> Dict[str, Any]:
    try:
        return await service.settle_unpaid(chain, batch_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"No unpaid batch {batch_id} on {chain}")
