from fastapi import Request

from kiosklink.core.errors import DeviceNotReadyError
from kiosklink.services.device_agent import DeviceAgent


def get_agent(request: Request) -> DeviceAgent:
    """
    FastAPI dependency returning the running device agent.

    Raises:
        DeviceNotReadyError: If the lifespan has not attached an agent
    """
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise DeviceNotReadyError()
    return agent
