import hashlib
import threading
from urllib.parse import quote_from_bytes

import pytest

from swarmcanary.canary.notifier import NotifyResult
from swarmcanary.common.errors import NotifyFailed

INFO_HASH = hashlib.sha1(b"swarmcanary test content").digest()
OTHER_HASH = hashlib.sha1(b"some unrelated torrent").digest()
CLIENT_PEER_ID = b"-TR2940-abcdefghijkl"
CANARY_PEER_ID = b"-SC0100-000000000000"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingNotifier:
    """Stands in for Notifier without spawning processes"""

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail
        self._lock = threading.Lock()

    def notify(self, address):
        with self._lock:
            self.calls.append(address)
        if self.fail:
            raise NotifyFailed("no such command")
        return NotifyResult(command=["true", address], pid=0, returncode=0)


def announce_query(info_hash=INFO_HASH, peer_id=CLIENT_PEER_ID, port=6881, **extra) -> str:
    params = {
        "info_hash": quote_from_bytes(info_hash, safe=""),
        "peer_id": quote_from_bytes(peer_id, safe=""),
        "port": str(port),
        "uploaded": "0",
        "downloaded": "0",
        "left": "100",
    }
    params.update({key: str(value) for key, value in extra.items()})
    return "&".join(f"{key}={value}" for key, value in params.items() if value != "None")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()
