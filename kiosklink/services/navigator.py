"""Full page transitions in the kiosk browser."""
import logging
import shlex
import subprocess
from typing import List, Optional

from kiosklink.core.config import settings

logger = logging.getLogger(__name__)

# Flags for an unattended full-screen browser
KIOSK_BROWSER_FLAGS = [
    "--noerrdialogs",
    "--disable-infobars",
    "--kiosk",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-sync",
    "--disable-translate",
    "--disable-features=TranslateUI",
    "--disable-pinch",
    "--overscroll-history-navigation=0",
    "--disable-session-crashed-bubble",
    "--autoplay-policy=no-user-gesture-required",
    "--start-fullscreen",
]


def build_page_url(path: str) -> str:
    """
    Map a route onto the URL the browser should load.

    The pairing page is served by this agent; every other route belongs to
    the content site.
    """
    if path == settings.pairing_path:
        return settings.pairing_url
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{settings.content_base_url}{path}"


class Navigator:
    """Loads a URL as a full page transition."""

    def open(self, url: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class HeadlessNavigator(Navigator):
    """Records navigations without a browser (headless installs and development)."""

    def __init__(self):
        self.history: List[str] = []

    def open(self, url: str) -> None:
        logger.info(f"Navigate (headless): {url}")
        self.history.append(url)


class ChromiumNavigator(Navigator):
    """
    Relaunches the kiosk browser on every navigation.

    A fresh process per page guarantees the destination boots clean, with no
    state carried over from the previous page.
    """

    def __init__(self, command: str, flags: Optional[List[str]] = None, terminate_timeout: float = 5.0):
        self.command = shlex.split(command)
        self.flags = list(KIOSK_BROWSER_FLAGS if flags is None else flags)
        self.terminate_timeout = terminate_timeout
        self._process: Optional[subprocess.Popen] = None

    def open(self, url: str) -> None:
        self.close()
        logger.info(f"Navigate: {url}")
        self._process = subprocess.Popen(self.command + self.flags + [url])

    def close(self) -> None:
        process, self._process = self._process, None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.terminate_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Browser did not exit after terminate, killing it")
            process.kill()
            process.wait()


def create_navigator() -> Navigator:
    if settings.browser_command:
        return ChromiumNavigator(settings.browser_command)
    return HeadlessNavigator()
