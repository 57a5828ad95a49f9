# swarmcanary/tracker/swarm_registry.py
"""
In-memory table of the peers seen in each swarm
"""
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from ..common.config import PEER_TTL, TRACKER_MAX_PEERS_RETURNED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerRecord:
    peer_id: bytes
    address: str
    port: int
    last_seen: float
    left: int = 0

    def is_alive(self, now: float, ttl: float) -> bool:
        return now - self.last_seen < ttl


class SwarmRegistry:
    """Peers per content hash, expired lazily on access"""

    def __init__(self, ttl: float = PEER_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.clock = clock
        self.swarms: Dict[bytes, Dict[bytes, PeerRecord]] = {}
        self._lock = threading.Lock()

    def register(self, info_hash: bytes, record: PeerRecord) -> Optional[PeerRecord]:
        """
        Adds or replaces the record of a peer

        Args:
            info_hash: Swarm the peer announced for
            record: New record; replaces any record with the same peer id

        Returns:
            The record it replaced, or None for a new peer
        """
        with self._lock:
            self._expire_locked(self.clock())
            swarm = self.swarms.setdefault(info_hash, {})
            previous = swarm.pop(record.peer_id, None)
            # re-inserted at the end so listing order follows the last announce
            swarm[record.peer_id] = record

        if previous is None:
            logger.debug(f"New peer {record.peer_id!r} at {record.address}:{record.port}")
        return previous

    def refresh(self, info_hash: bytes, peer_id: bytes, address: str) -> Optional[PeerRecord]:
        """
        Updates the address and last_seen of a peer that already announced

        The announced port and left are kept; unknown peers are not added.

        Returns:
            The record before the update, or None if the peer is unknown
        """
        with self._lock:
            now = self.clock()
            self._expire_locked(now)
            swarm = self.swarms.get(info_hash)
            if swarm is None or peer_id not in swarm:
                return None
            previous = swarm.pop(peer_id)
            swarm[peer_id] = replace(previous, address=address, last_seen=now)
            return previous

    def remove(self, info_hash: bytes, peer_id: bytes) -> Optional[PeerRecord]:
        """Removes a peer that announced event=stopped"""
        with self._lock:
            swarm = self.swarms.get(info_hash)
            if swarm is None:
                return None
            record = swarm.pop(peer_id, None)
            if not swarm:
                del self.swarms[info_hash]
            return record

    def list(self, info_hash: bytes, exclude_peer_id: Optional[bytes] = None,
             max_count: int = TRACKER_MAX_PEERS_RETURNED) -> List[PeerRecord]:
        """
        Snapshot of the live peers in a swarm

        Args:
            info_hash: Swarm to list
            exclude_peer_id: Peer to leave out (usually the requester)
            max_count: Upper bound on the number of records

        Returns:
            Records in registration order
        """
        if max_count <= 0:
            return []

        with self._lock:
            self._expire_locked(self.clock())
            swarm = self.swarms.get(info_hash, {})
            peers = [r for r in swarm.values() if r.peer_id != exclude_peer_id]

        return peers[:max_count]

    def counts(self, info_hash: bytes) -> Tuple[int, int]:
        """Returns (complete, incomplete) for a swarm"""
        with self._lock:
            self._expire_locked(self.clock())
            swarm = self.swarms.get(info_hash, {})
            complete = sum(1 for r in swarm.values() if r.left == 0)
            return complete, len(swarm) - complete

    def expire(self, now: Optional[float] = None) -> int:
        """
        Drops records not refreshed within the TTL

        Returns:
            Number of records removed
        """
        with self._lock:
            return self._expire_locked(self.clock() if now is None else now)

    def _expire_locked(self, now: float) -> int:
        removed = 0
        for info_hash in list(self.swarms):
            swarm = self.swarms[info_hash]
            stale = [pid for pid, r in swarm.items() if not r.is_alive(now, self.ttl)]
            for peer_id in stale:
                record = swarm.pop(peer_id)
                logger.info(f"Inactive peer removed: {record.address}:{record.port}")
            removed += len(stale)
            if not swarm:
                del self.swarms[info_hash]
        return removed

    def __len__(self) -> int:
        with self._lock:
            return sum(len(swarm) for swarm in self.swarms.values())
