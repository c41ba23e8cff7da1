"""Pending-device (MVS) endpoints for hubs."""
import logging
from fastapi import APIRouter

from mvs_sync_service import mvs_sync_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/hubs/{hub_id}/pending-devices")
def get_pending_devices(hub_id: str):
    """Canonical pending list for a hub, in the same shape the hub receives."""
    return mvs_sync_service.build_pending_payload(hub_id)


@router.post("/hubs/{hub_id}/pending-devices/republish")
def republish_pending_devices(hub_id: str):
    """Push the canonical pending list to ``hub/{id}/receive`` on demand."""
    published = mvs_sync_service.republish(hub_id)
    if not published:
        logger.warning(f"Manual republish for hub {hub_id} did not go out")
    return {"hubId": hub_id, "published": published}
