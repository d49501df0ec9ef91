"""Machine reconciliation API endpoints."""
from fastapi import APIRouter, Depends, HTTPException

from metalclaim.api.dependencies import get_controller
from metalclaim.api.schemas import (
    ApiResponse,
    HostResponse,
    MachineReconcileRequest,
    MachineReconcileResponse,
)
from metalclaim.controller import Controller
from metalclaim.core.host_store import HostStoreError
from metalclaim.core.models import Machine
from metalclaim.core.state_machine import InvalidStateTransition

router = APIRouter()


@router.post("/machines/reconcile", response_model=ApiResponse[MachineReconcileResponse])
async def reconcile_machine(
    body: MachineReconcileRequest,
    controller: Controller = Depends(get_controller),
):
    """Claim and provision a physical host for a machine.

    A machine that is still waiting for a host is not an error; the response
    carries the delay after which the caller should reconcile again.
    """
    machine = body.machine.model_copy(deep=True)
    try:
        result = await controller.reconciler.reconcile(
            machine, body.image_url, body.requirements
        )
    except InvalidStateTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    except HostStoreError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ApiResponse(
        data=MachineReconcileResponse(
            machine=machine,
            host=HostResponse.from_host(result.host) if result.host else None,
            requeue_after=result.requeue_after,
        ),
        message="Requeue requested" if result.requeue_after is not None else None,
    )


@router.post("/machines/release", response_model=ApiResponse[Machine])
async def release_machine(
    machine: Machine,
    controller: Controller = Depends(get_controller),
):
    """Release the physical host owned by a machine."""
    machine = machine.model_copy(deep=True)
    try:
        await controller.reconciler.reconcile_delete(machine)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=400, detail=str(e))
    except HostStoreError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ApiResponse(data=machine, message="Physical host released")
