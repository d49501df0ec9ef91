"""Coordination status API endpoints."""
from fastapi import APIRouter, Depends

from metalclaim.api.dependencies import get_controller
from metalclaim.api.schemas import (
    ApiResponse,
    ClaimQueueStatusResponse,
    CoordinationStatusResponse,
    LeadershipStatusResponse,
    ProvisioningQueueStatusResponse,
)
from metalclaim.controller import Controller

router = APIRouter()


@router.get("/coordination/status", response_model=ApiResponse[CoordinationStatusResponse])
async def get_coordination_status(controller: Controller = Depends(get_controller)):
    """Leadership, claim queue and provisioning queue status of this replica."""
    claims_queued, claims_pending = controller.coordinator.get_claim_queue_status()
    ops_queued, ops_in_flight = controller.queue.get_queue_status()

    return ApiResponse(
        data=CoordinationStatusResponse(
            leadership=LeadershipStatusResponse(
                **controller.coordinator.get_leadership_status()
            ),
            claim_queue=ClaimQueueStatusResponse(
                queued=claims_queued, pending=claims_pending
            ),
            provisioning_queue=ProvisioningQueueStatusResponse(
                queued=ops_queued,
                in_flight=ops_in_flight,
                stats=controller.queue.get_stats(),
            ),
        )
    )
