"""Per-connection ceiling on live subscriptions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Optional

from loopdash import config
from loopdash.live.registry import TailRegistry


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    reason: Optional[str] = None


class AdmissionControl:
    """Counts the distinct loop keys a connection holds in the registry.

    Subscribing again to a key the connection already holds is always allowed
    and does not count twice.
    """

    def __init__(self, max_subscriptions: int = config.MAX_SUBSCRIPTIONS_PER_CLIENT):
        self.max_subscriptions = max_subscriptions

    def count(self, registry: TailRegistry, connection: Hashable) -> int:
        return len(registry.keys_for(connection))

    def can_subscribe(self, registry: TailRegistry, connection: Hashable) -> bool:
        return self.count(registry, connection) < self.max_subscriptions

    def check(self, registry: TailRegistry, connection: Hashable, loop_id: str) -> AdmissionDecision:
        if loop_id in registry.keys_for(connection):
            return AdmissionDecision(True)
        if not self.can_subscribe(registry, connection):
            return AdmissionDecision(False, f"Maximum subscriptions ({self.max_subscriptions}) reached")
        return AdmissionDecision(True)
