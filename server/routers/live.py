"""
Machine Metrics Hub - Live Router

Latest snapshot per machine, and an SSE stream that pushes it on a fixed cadence.
"""

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from services import LiveSnapshots, SSEHub
from .dependencies import get_snapshots, get_sse

router = APIRouter()

KEEPALIVE_SECONDS = 15


@router.get("/{machine_id}")
async def get_live_snapshot(machine_id: str, snapshots: LiveSnapshots = Depends(get_snapshots)):
    """Newest reading received for a machine, durable or not."""
    snapshot = snapshots.get(machine_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No live data for this machine")
    return snapshot


@router.get("/{machine_id}/stream")
async def stream_live(
    machine_id: str,
    snapshots: LiveSnapshots = Depends(get_snapshots),
    sse: SSEHub = Depends(get_sse),
):
    """Stream live snapshots via SSE, starting with the current one."""
    sub = sse.subscribe(machine_id, initial=snapshots.get(machine_id))
    return EventSourceResponse(sse.stream(sub), ping=KEEPALIVE_SECONDS)
