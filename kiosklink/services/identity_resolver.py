"""
Boot-time identity recovery for a kiosk device.

Identity is resolved by an ordered list of tiers. Each tier is a plain
function of (environment, cache, store) returning a TierOutcome:

    NAVIGATE      the device is assigned; load that path now
    WAIT          identity is known but unassigned; show the pairing code
    FALL_THROUGH  this tier could not decide; try the next one
    STALLED       registration gave up; a human has to refresh the device

Tiers run strictly in order and the first non-FALL_THROUGH outcome wins.
"""
import enum
import logging
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from kiosklink.core.config import settings
from kiosklink.core.errors import StoreError, RowNotFoundError, UniqueViolationError
from kiosklink.schemas.screens import ScreenHeartbeat, ScreenInsert
from kiosklink.services.code_generator import generate_code
from kiosklink.services.local_cache import LocalCache
from kiosklink.services.store import ScreenStore

logger = logging.getLogger(__name__)


class OutcomeKind(str, enum.Enum):
    NAVIGATE = "navigate"
    WAIT = "wait"
    FALL_THROUGH = "fall_through"
    STALLED = "stalled"


@dataclass(frozen=True)
class TierOutcome:
    kind: OutcomeKind
    path: Optional[str] = None
    screen_id: Optional[str] = None
    code: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def navigate(cls, path: str, screen_id: Optional[str] = None) -> "TierOutcome":
        return cls(OutcomeKind.NAVIGATE, path=path, screen_id=screen_id)

    @classmethod
    def wait(cls, screen_id: str, code: Optional[str]) -> "TierOutcome":
        return cls(OutcomeKind.WAIT, screen_id=screen_id, code=code)

    @classmethod
    def fall_through(cls, reason: str) -> "TierOutcome":
        return cls(OutcomeKind.FALL_THROUGH, reason=reason)

    @classmethod
    def stalled(cls, reason: str) -> "TierOutcome":
        return cls(OutcomeKind.STALLED, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.kind != OutcomeKind.FALL_THROUGH


@dataclass(frozen=True)
class LaunchEnvironment:
    """What the device's launch environment tells us about itself."""
    hostname: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_settings(cls, cache: Optional[LocalCache] = None) -> "LaunchEnvironment":
        """
        Read the launch hostname from settings or the OS.

        When neither supplies one, fall back to the hostname cached by an
        earlier boot; a launch hostname always wins over the cached one.
        """
        hostname = settings.device_hostname
        if not hostname and settings.detect_hostname:
            hostname = socket.gethostname()
        if not hostname and cache is not None:
            hostname = cache.hostname
            if hostname:
                logger.info(f"No launch hostname, using cached hostname {hostname}")
        return cls(hostname=hostname or None, user_agent=settings.user_agent)


Tier = Callable[[LaunchEnvironment, LocalCache, ScreenStore], TierOutcome]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _heartbeat_payload(env: LaunchEnvironment) -> ScreenHeartbeat:
    return ScreenHeartbeat(last_seen=_now(), user_agent=env.user_agent, name=env.hostname)


def recover_from_hostname(env: LaunchEnvironment, cache: LocalCache, store: ScreenStore) -> TierOutcome:
    """Tier 1: find the most recently active screen carrying this device's hostname."""
    if not env.hostname:
        return TierOutcome.fall_through("no launch hostname")

    cache.remember_hostname(env.hostname)

    try:
        screen = store.find_latest_by_name(env.hostname)
    except StoreError as e:
        logger.warning(f"Hostname lookup for {env.hostname} failed, trying local cache: {e}")
        return TierOutcome.fall_through("hostname lookup failed")

    if screen is None:
        return TierOutcome.fall_through(f"no screen named {env.hostname}")

    logger.info(f"Recovered screen {screen.id} from hostname {env.hostname}")
    cache.remember_identity(screen.id, screen.code)

    try:
        screen = store.heartbeat(screen.id, _heartbeat_payload(env))
    except RowNotFoundError:
        # Deleted between lookup and heartbeat
        cache.purge_identity()
        return TierOutcome.fall_through("recovered screen was deleted")
    except StoreError as e:
        logger.warning(f"Heartbeat after hostname recovery failed, using lookup result: {e}")

    if screen.assigned_path:
        cache.remember_path(screen.assigned_path)
        return TierOutcome.navigate(screen.assigned_path, screen_id=screen.id)
    return TierOutcome.wait(screen.id, screen.code)


def recover_from_cache(env: LaunchEnvironment, cache: LocalCache, store: ScreenStore) -> TierOutcome:
    """Tier 2: trust the cached id (and path) after checking the row still exists."""
    screen_id = cache.screen_id
    if not screen_id:
        return TierOutcome.fall_through("no cached screen id")

    cached_path = cache.last_path

    if cached_path:
        # The heartbeat's read-back doubles as the existence check: one round trip
        try:
            screen = store.heartbeat(screen_id, _heartbeat_payload(env))
        except RowNotFoundError:
            logger.info(f"Cached screen {screen_id} no longer exists")
            cache.purge_identity()
            return TierOutcome.fall_through("cached screen deleted")
        except StoreError as e:
            logger.warning(f"Could not verify screen {screen_id}, using cached path {cached_path}: {e}")
            return TierOutcome.navigate(cached_path, screen_id=screen_id)

        path = screen.assigned_path or cached_path
        cache.remember_path(path)
        return TierOutcome.navigate(path, screen_id=screen_id)

    try:
        screen = store.get_screen(screen_id)
    except RowNotFoundError:
        logger.info(f"Cached screen {screen_id} no longer exists")
        cache.purge_identity()
        return TierOutcome.fall_through("cached screen deleted")
    except StoreError as e:
        # Never mint a new identity while the old one may still be recoverable
        logger.warning(f"Could not verify screen {screen_id}, resuming with cached code: {e}")
        return TierOutcome.wait(screen_id, cache.code)

    if screen.assigned_path:
        cache.remember_path(screen.assigned_path)
        return TierOutcome.navigate(screen.assigned_path, screen_id=screen.id)

    cache.remember_identity(screen.id, screen.code)
    return TierOutcome.wait(screen.id, screen.code)


def _fresh_code(code_factory: Callable[[], str], previous: Optional[str] = None) -> str:
    code = code_factory()
    while code == previous:
        code = code_factory()
    return code


def register_new_screen(
    env: LaunchEnvironment,
    cache: LocalCache,
    store: ScreenStore,
    max_attempts: int = None,
    retry_delay: float = None,
    sleep: Callable[[float], None] = time.sleep,
    code_factory: Callable[[], str] = None,
) -> TierOutcome:
    """
    Tier 3: register a brand new screen row.

    Code collisions and other store errors share one attempt counter.
    Collisions retry immediately with a new code; other errors wait
    `retry_delay` seconds and retry with the same code.
    """
    max_attempts = max_attempts or settings.registration_max_attempts
    retry_delay = settings.registration_retry_delay_seconds if retry_delay is None else retry_delay
    code_factory = code_factory or (lambda: generate_code(settings.code_length))

    code = _fresh_code(code_factory)
    attempts = 0

    while attempts < max_attempts:
        attempts += 1
        try:
            screen = store.insert_screen(
                ScreenInsert(code=code, last_seen=_now(), user_agent=env.user_agent, name=env.hostname)
            )
        except UniqueViolationError:
            logger.info(f"Code {code} already taken (attempt {attempts}/{max_attempts}), regenerating")
            code = _fresh_code(code_factory, previous=code)
            continue
        except StoreError as e:
            logger.warning(f"Registration attempt {attempts}/{max_attempts} failed: {e}")
            if attempts < max_attempts:
                sleep(retry_delay)
            continue

        code = screen.code or code
        cache.remember_identity(screen.id, code)
        logger.info(f"Registered screen {screen.id} with code {code}")
        return TierOutcome.wait(screen.id, code)

    logger.error(f"Registration stalled after {attempts} attempts; device needs a manual refresh")
    return TierOutcome.stalled(f"registration failed after {attempts} attempts")


TIERS: Sequence[Tier] = (recover_from_hostname, recover_from_cache, register_new_screen)


def resolve_identity(
    env: LaunchEnvironment,
    cache: LocalCache,
    store: ScreenStore,
    tiers: Sequence[Tier] = TIERS,
) -> TierOutcome:
    """Run the recovery tiers in order and return the first decisive outcome."""
    for tier in tiers:
        outcome = tier(env, cache, store)
        if outcome.is_terminal:
            logger.info(f"Identity resolved by {tier.__name__}: {outcome.kind.value}")
            return outcome
        logger.debug(f"{tier.__name__} fell through: {outcome.reason}")
    return TierOutcome.stalled("no tier resolved identity")
