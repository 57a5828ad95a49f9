# swarmcanary/common/messages.py
"""
Events passed from the listeners to the canary evaluator
"""
import time
from dataclasses import dataclass, field
from enum import Enum


class EventSource(Enum):
    TRACKER = "tracker"
    PEER = "peer"


@dataclass(frozen=True)
class CanaryEvent:
    observed_address: str
    source: EventSource
    info_hash: bytes
    timestamp: float = field(default_factory=time.time)

    def describe(self) -> str:
        return f"{self.source.value} saw {self.observed_address} for {self.info_hash.hex()}"
