from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from ..core.ledger.hashing import normalize_address
from ..core.relayer import RelayerService, get_relayer_service

router = APIRouter()


class MetaTxCall(BaseModel):
    to: str
    value: int = Field(default=0, ge=0, description="Native value in wei")
    data: str = Field(default="0x", description="Calldata as 0x hex")


class BatchMetaTxRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(..., alias="from", description="Signer of the batch")
    targetChain: Optional[str] = Field(default=None, description="Executing chain; defaults to the hub")
    metaTxs: List[MetaTxCall] = Field(..., description="Calls in execution order")
    signature: str = Field(..., description="EIP-712 BatchTransaction signature")
    nonce: int = Field(..., ge=0, description="Signer's current batch nonce")
    deadline: int = Field(..., ge=0, description="Unix timestamp after which the batch is rejected")


class MetaTxRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(..., alias="from")
    to: str
    value: Union[int, str] = 0
    data: str = "0x"
    signature: str = Field(..., description="Signature over the batch of one")
    nonce: int = Field(..., ge=0)
    deadline: int = Field(..., ge=0)
    targetChain: Optional[str] = None


class EstimateBatchRequest(BaseModel):
    metaTxs: Optional[List[MetaTxCall]] = None
    metaTxData: Optional[str] = Field(default=None, description="Pre-encoded calls, used when metaTxs is absent")
    targetChain: Optional[str] = None


@router.post("/batch-meta-tx")
async def batch_meta_tx(
    request: BatchMetaTxRequest,
    service: RelayerService = Depends(get_relayer_service),
) -> Dict[str, Any]:
    result = await service.submit_batch(
        normalize_address(request.from_address),
        [call.model_dump() for call in request.metaTxs],
        request.signature,
        request.nonce,
        request.deadline,
        chain=request.targetChain,
    )
    return {"success": True, **result.to_dict()}


@router.post("/meta-tx")
async def meta_tx(
    request: MetaTxRequest,
    service: RelayerService = Depends(get_relayer_service),
) -> Dict[str, Any]:
    result = await service.submit_meta_transaction(
        normalize_address(request.from_address),
        normalize_address(request.to),
        int(request.value),
        request.data,
        request.signature,
        request.nonce,
        request.deadline,
        chain=request.targetChain,
    )
    return {"success": True, **result.to_dict()}


@router.post("/estimate-batch")
async def estimate_batch(
    request: EstimateBatchRequest,
    service: RelayerService = Depends(get_relayer_service),
) -> Dict[str, Any]:
    if request.metaTxs is not None:
        batch: Any = [call.model_dump() for call in request.metaTxs]
    else:
        batch = request.metaTxData or ""
    estimate = await service.estimate_batch(batch, chain=request.targetChain)
    return {
        "gasLimit": estimate.gas_limit,
        "gasPriceWei": str(estimate.gas_price_wei),
        "costCents": estimate.cost_cents,
        "calls": estimate.calls,
    }


@router.get("/credits/{address}")
async def credits(
    address: str,
    service: RelayerService = Depends(get_relayer_service),
) -> Dict[str, Any]:
    return await service.get_credits(normalize_address(address))


@router.get("/nonce/{address}")
async def batch_nonce(
    address: str,
    chain: Optional[str] = Query(default=None),
    service: RelayerService = Depends(get_relayer_service),
) -> Dict[str, Any]:
    user = normalize_address(address)
    return {"address": user, "nonce": await service.get_batch_nonce(user, chain=chain)}


@router.get("/chains")
async def chains(service: RelayerService = Depends(get_relayer_service)) -> List[Dict[str, Any]]:
    return await service.get_chains()
