from fastapi import APIRouter, Depends, status
from fastapi.responses import HTMLResponse, RedirectResponse
import html

from kiosklink.api.deps import get_agent
from kiosklink.core.config import settings
from kiosklink.schemas.screens import DeviceState
from kiosklink.services.device_agent import DeviceAgent

router = APIRouter()

REFRESH_SECONDS = 3

PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta http-equiv="refresh" content="{refresh}">
<title>Screen Setup</title>
<style>
  body {{ margin: 0; width: 100vw; height: 100vh; background: #000; color: #f0f0ff;
         display: flex; flex-direction: column; align-items: center; justify-content: center;
         font-family: 'Bebas Neue', Impact, sans-serif; overflow: hidden; }}
  .code {{ font-size: min(20vw, 25vh); letter-spacing: 0.3em; line-height: 1;
          text-shadow: 0 0 20px rgba(139,92,246,0.8), 0 0 60px rgba(139,92,246,0.4); }}
  .status {{ font-size: min(2.5vw, 3vh); color: rgba(255,255,255,0.4); letter-spacing: 0.2em;
            text-transform: uppercase; margin-top: 3vh; }}
  .alert {{ color: #ff6b6b; }}
  .hint {{ position: fixed; bottom: 3vh; font-size: min(1.2vw, 1.5vh);
          color: rgba(255,255,255,0.15); letter-spacing: 0.15em; }}
  .retry {{ margin-top: 4vh; padding: 1.5vh 4vw; font-size: min(2vw, 2.5vh); color: #f0f0ff;
           border: 1px solid rgba(139,92,246,0.8); letter-spacing: 0.2em; text-decoration: none; }}
</style>
</head>
<body>
{body}
</body>
</html>
"""


def render_pairing_page(state: DeviceState, code: str = None) -> str:
    if state == DeviceState.WAITING and code:
        body = (
            f'<div class="code">{html.escape(code)}</div>\n'
            '<div class="status">Awaiting Assignment...</div>\n'
            '<div class="hint">Enter this code in the admin panel to assign a display</div>'
        )
    elif state == DeviceState.WAITING:
        body = '<div class="status">Reconnecting...</div>'
    elif state == DeviceState.STALLED:
        body = (
            '<div class="status alert">Registration stalled</div>\n'
            f'<a class="retry" href="{html.escape(settings.pairing_path)}?retry=1">Try again</a>\n'
            '<div class="hint">This display could not register. Tap Try again or restart the device.</div>'
        )
    else:
        body = '<div class="status">Registering...</div>'
    return PAGE_TEMPLATE.format(refresh=REFRESH_SECONDS, body=body)


@router.get("", response_class=HTMLResponse)
async def pairing_page(retry: bool = False, agent: DeviceAgent = Depends(get_agent)):
    """
    Pairing page shown by the kiosk browser while the device is unassigned.

    `?retry=1` (the stalled page's Try again link) reruns identity resolution
    when registration has stalled, then redirects back to the plain page so a
    refresh does not retry again.
    """
    if retry:
        session = agent.session
        if session is not None and session.state == DeviceState.STALLED:
            # Repeated taps before the reload starts find the session already exiting
            agent.request_reload(session)
        return RedirectResponse(settings.pairing_path, status_code=status.HTTP_303_SEE_OTHER)
    device = agent.status()
    return HTMLResponse(render_pairing_page(device.state, device.code))
