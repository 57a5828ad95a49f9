# swarmcanary/canary/evaluator.py
"""
Compares observed addresses against the expected set
"""
import ipaddress
import logging
import threading
import time
from typing import Callable, Dict, Iterable

from ..common.config import NOTIFY_COOLDOWN
from ..common.errors import NotifyFailed
from ..common.messages import CanaryEvent

logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    """
    Canonical text form of an IP address

    IPv4-mapped IPv6 addresses become plain IPv4, IPv6 is compressed and
    lower-cased and zone ids are dropped. Strings that are not IP addresses
    are only stripped and lower-cased.
    """
    text = str(address).strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    text = text.split("%", 1)[0]

    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return text.lower()

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.compressed


class CanaryEvaluator:
    """Fires the notifier for unexpected addresses, once per cool-down window"""

    def __init__(self, expected_addresses: Iterable[str], notifier,
                 cooldown: float = NOTIFY_COOLDOWN,
                 clock: Callable[[], float] = time.monotonic):
        self.expected = frozenset(normalize_address(a) for a in expected_addresses)
        self.notifier = notifier
        self.cooldown = cooldown
        self.clock = clock
        self.last_notified: Dict[str, float] = {}
        self._lock = threading.Lock()

    def observe(self, event: CanaryEvent) -> bool:
        """
        Handles one observation

        Returns:
            True if a notification was dispatched
        """
        address = normalize_address(event.observed_address)
        if address in self.expected:
            logger.debug(f"Expected address: {event.describe()}")
            return False

        logger.warning(f"Unexpected address {address} ({event.describe()})")

        with self._lock:
            now = self.clock()
            last = self.last_notified.get(address)
            if last is not None and now - last < self.cooldown:
                logger.info(f"Notification for {address} suppressed (cool-down)")
                return False
            self.last_notified[address] = now
            self._prune_locked(now)

        try:
            self.notifier.notify(address)
        except NotifyFailed as e:
            logger.error(f"Notification for {address} failed: {e}")
            return False
        return True

    def _prune_locked(self, now: float):
        stale = [a for a, ts in self.last_notified.items() if now - ts >= self.cooldown]
        for address in stale:
            del self.last_notified[address]
