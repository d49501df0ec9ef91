"""Physical host management API endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from metalclaim.api.dependencies import get_controller
from metalclaim.api.schemas import (
    ApiListResponse,
    ApiResponse,
    HostCreate,
    HostResponse,
    HostStateLogResponse,
)
from metalclaim.config import settings
from metalclaim.controller import Controller
from metalclaim.core.host_store import (
    ConflictError,
    HostAlreadyExistsError,
    HostInUseError,
    HostNotFoundError,
)
from metalclaim.core.models import HostState, PhysicalHost
from metalclaim.core.state_machine import (
    InvalidStateTransition,
    PhysicalHostStateMachine,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def _get_host(controller: Controller, namespace: str, name: str) -> PhysicalHost:
    try:
        return await controller.store.get(name, namespace)
    except HostNotFoundError:
        raise HTTPException(status_code=404, detail=f"Host {namespace}/{name} not found")


def _transition_error(host: PhysicalHost, e: InvalidStateTransition) -> HTTPException:
    valid = [s.label for s in PhysicalHostStateMachine.get_valid_transitions(host.state)]
    return HTTPException(status_code=400, detail=f"{str(e)}. Valid transitions: {valid}")


@router.get("/hosts", response_model=ApiListResponse[HostResponse])
async def list_hosts(
    state: str | None = Query(None, description="Filter by state"),
    namespace: str | None = Query(None, description="Filter by namespace"),
    controller: Controller = Depends(get_controller),
):
    """List all hosts with optional filtering."""
    if state is not None and not PhysicalHostStateMachine.is_state_valid(state):
        raise HTTPException(status_code=400, detail=f"Unknown state: {state}")

    hosts = await controller.store.list(
        state=HostState(state) if state is not None else None,
        namespace=namespace,
    )
    return ApiListResponse(
        data=[HostResponse.from_host(h) for h in hosts],
        total=len(hosts),
    )


@router.post("/hosts", response_model=ApiResponse[HostResponse], status_code=201)
async def create_host(
    host_data: HostCreate,
    controller: Controller = Depends(get_controller),
):
    """Register a new physical host."""
    try:
        host = await controller.store.create(
            host_data.to_host(settings.default_namespace)
        )
    except HostAlreadyExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ApiResponse(
        data=HostResponse.from_host(host),
        message="Host registered",
    )


@router.get("/hosts/{namespace}/{name}", response_model=ApiResponse[HostResponse])
async def get_host(
    namespace: str,
    name: str,
    controller: Controller = Depends(get_controller),
):
    """Get host details."""
    host = await _get_host(controller, namespace, name)
    return ApiResponse(data=HostResponse.from_host(host))


@router.post(
    "/hosts/{namespace}/{name}/enroll", response_model=ApiResponse[HostResponse]
)
async def enroll_host(
    namespace: str,
    name: str,
    controller: Controller = Depends(get_controller),
):
    """Inspect a host through its BMC and make it available for claims."""
    host = await _get_host(controller, namespace, name)

    try:
        host = await controller.provisioner.enroll(host)
    except InvalidStateTransition as e:
        raise _transition_error(host, e)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if host.state == HostState.ERROR:
        return ApiResponse(
            success=False,
            data=HostResponse.from_host(host),
            message=host.error_message,
        )
    return ApiResponse(
        data=HostResponse.from_host(host),
        message=f"Host enrolled ({host.state.label})",
    )


@router.get(
    "/hosts/{namespace}/{name}/history",
    response_model=ApiListResponse[HostStateLogResponse],
)
async def get_host_history(
    namespace: str,
    name: str,
    limit: int = Query(50, ge=1, le=500),
    controller: Controller = Depends(get_controller),
):
    """Get state transition history for a host."""
    await _get_host(controller, namespace, name)
    entries = await controller.store.history(name, namespace, limit=limit)

    return ApiListResponse(
        data=[
            HostStateLogResponse(
                from_state=entry.from_state.label,
                to_state=entry.to_state.label,
                triggered_by=entry.triggered_by,
                comment=entry.comment,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        total=len(entries),
    )


@router.delete("/hosts/{namespace}/{name}", response_model=ApiResponse[dict])
async def delete_host(
    namespace: str,
    name: str,
    controller: Controller = Depends(get_controller),
):
    """Deprovision and remove a host.

    The host is marked for deletion first, so it can no longer be claimed.
    Hosts that never left the None state have nothing to tear down.
    """
    host = await _get_host(controller, namespace, name)
    if host.consumer_ref is not None:
        raise HTTPException(
            status_code=409,
            detail=f"Host {host.key} is claimed by machine {host.consumer_ref.name}",
        )

    try:
        host = await controller.store.mark_for_deletion(name, namespace)
        if host.state != HostState.NONE:
            host = await controller.provisioner.deprovision(host)
            if host.state != HostState.AVAILABLE:
                raise HTTPException(
                    status_code=409,
                    detail=(
                        f"Deprovisioning of host {host.key} did not complete "
                        f"({host.state.label}): {host.error_message}"
                    ),
                )
        await controller.store.delete(host)
    except InvalidStateTransition as e:
        raise _transition_error(host, e)
    except (ConflictError, HostInUseError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except HostNotFoundError:
        raise HTTPException(status_code=404, detail=f"Host {namespace}/{name} not found")

    logger.info(f"Host {host.key} removed via API")
    return ApiResponse(
        data={"namespace": namespace, "name": name},
        message="Host deleted",
    )
