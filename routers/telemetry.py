"""Live telemetry read endpoints backed by the broadcast worker's buffers."""
import re
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from telemetry_worker import telemetry_worker

router = APIRouter()

MAC_ADDRESS_RE = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}([0-9A-Fa-f]{2})$")


class RecentTelemetryResponse(BaseModel):
    """Recent samples for one device."""
    deviceAddress: str
    count: int
    data: List[Dict[str, Any]]


@router.get("/recent/{device_address}", response_model=RecentTelemetryResponse)
def get_recent_telemetry(
    device_address: str,
    limit: int = Query(100, ge=1, le=1000),
):
    """Most recent samples the worker holds for a device (oldest first)."""
    if not MAC_ADDRESS_RE.match(device_address):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Not a valid MAC address",
        )
    data = telemetry_worker.get_recent_data(device_address, limit)
    return {"deviceAddress": device_address, "count": len(data), "data": data}


@router.get("/recent")
def get_all_recent_telemetry(limit: int = Query(100, ge=1, le=1000)):
    data = telemetry_worker.get_all_recent_data(limit)
    return {"devices": len(data), "data": data}


@router.get("/latest")
def get_latest_telemetry_all():
    data = telemetry_worker.get_latest_telemetry(None)
    return {"count": len(data), "data": data}


@router.get("/latest/{device_id}")
def get_latest_telemetry(device_id: str):
    data: Optional[Dict[str, Any]] = telemetry_worker.get_latest_telemetry(device_id)
    if data is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No telemetry received for {device_id}",
        )
    return data
