from fastapi import APIRouter, Depends, status
import logging

from kiosklink.api.deps import get_agent
from kiosklink.schemas.screens import DeviceStatusResponse
from kiosklink.services.device_agent import DeviceAgent

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/device", response_model=DeviceStatusResponse)
async def get_device_status(agent: DeviceAgent = Depends(get_agent)):
    """Current page load: state, identity and pairing code."""
    return agent.status()


@router.post("/device/reload", status_code=status.HTTP_202_ACCEPTED)
async def reload_device(agent: DeviceAgent = Depends(get_agent)):
    """
    Human-initiated refresh of the current page.

    This is how a device stuck in the stalled state gets another
    registration attempt.
    """
    logger.info("Manual reload requested")
    agent.request_reload()
    return {"status": "reloading"}
