"""
Machine Metrics Hub - Machines Router

Machine registration, the machine list and the ingestion endpoint that
remote push clients submit sample batches to.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from models import Sample, SamplePayload
from services import LiveSnapshots, MachineRegistry, MetricsWriter
from .auth import require_token
from .dependencies import get_registry, get_snapshots, get_writer

logger = structlog.get_logger(__name__)

router = APIRouter()


class RegisterRequest(BaseModel):
    hostname: Optional[str] = None
    display_name: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class MetricsSubmission(BaseModel):
    metrics: List[SamplePayload]
    hostname: Optional[str] = None
    display_name: Optional[str] = None
    ip_address: Optional[str] = None
    system_info: Optional[Dict[str, Any]] = None


class MachineUpdate(BaseModel):
    is_active: bool


@router.get("")
async def list_machines(
    include_inactive: bool = Query(False),
    registry: MachineRegistry = Depends(get_registry),
):
    """List registered machines, most recently seen first."""
    if include_inactive:
        machines = await registry.list_all()
    else:
        machines = await registry.list_active()
    return {"machines": machines, "count": len(machines)}


@router.get("/{machine_id}")
async def get_machine(machine_id: str, registry: MachineRegistry = Depends(get_registry)):
    """Get details for a specific machine."""
    machine = await registry.get(machine_id)
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")
    return machine


@router.get("/{machine_id}/info")
async def get_machine_info(machine_id: str, registry: MachineRegistry = Depends(get_registry)):
    """Stored hardware/OS profile of a machine."""
    machine = await registry.get(machine_id)
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")

    info = machine["metadata"]
    if not info:
        raise HTTPException(status_code=404, detail="No system information available for this machine")

    return {
        "machine_id": machine["machine_id"],
        "hostname": machine["hostname"],
        "os": info.get("os", "Unknown"),
        "arch": info.get("arch", "Unknown"),
        "cpu": info.get("cpu", {}),
        "memory": info.get("memory", {}),
        "gpu": info.get("gpu", []),
        "system": info.get("system", {}),
        "last_seen": machine["last_seen"],
    }


@router.post("/{machine_id}/register", dependencies=[Depends(require_token)])
async def register_machine(
    machine_id: str,
    body: RegisterRequest,
    registry: MachineRegistry = Depends(get_registry),
):
    """Register or update a machine."""
    machine = await registry.register(
        machine_id,
        hostname=body.hostname,
        display_name=body.display_name,
        ip_address=body.ip_address,
        metadata=body.metadata,
    )
    return {"message": "Machine registered successfully", "machine": machine}


@router.patch("/{machine_id}", dependencies=[Depends(require_token)])
async def update_machine(
    machine_id: str,
    body: MachineUpdate,
    registry: MachineRegistry = Depends(get_registry),
):
    """Activate or deactivate a machine."""
    if not await registry.set_active(machine_id, body.is_active):
        raise HTTPException(status_code=404, detail="Machine not found")
    return await registry.get(machine_id)


@router.post("/{machine_id}/metrics", dependencies=[Depends(require_token)])
async def submit_metrics(
    machine_id: str,
    body: MetricsSubmission,
    request: Request,
    durable: bool = Query(False, description="Write the batch before responding instead of queueing it"),
    registry: MachineRegistry = Depends(get_registry),
    writer: MetricsWriter = Depends(get_writer),
    snapshots: LiveSnapshots = Depends(get_snapshots),
):
    """
    Submit a batch of samples for one machine.

    The batch is validated as a whole before anything is applied. By default
    samples are queued for the next flush; with durable=true the batch is
    written in one transaction and either all of it persists or the request fails.
    """
    samples = [Sample(machine_id=machine_id, **payload.model_dump()) for payload in body.metrics]

    if durable:
        try:
            await writer.store.insert_samples(samples)
        except Exception as e:
            logger.error("Failed to submit metrics", machine_id=machine_id, count=len(samples), error=str(e))
            raise HTTPException(status_code=500, detail="Failed to submit metrics")
    else:
        for sample in samples:
            writer.enqueue(sample)

    # Registry changes only once the batch is accepted
    await registry.register(
        machine_id,
        hostname=body.hostname,
        display_name=body.display_name,
        ip_address=body.ip_address or (request.client.host if request.client else None),
        metadata=body.system_info,
    )
    snapshots.update_many(samples)

    return {
        "message": "Metrics submitted successfully",
        "count": len(samples),
        "machine_id": machine_id,
        "durable": durable,
    }
