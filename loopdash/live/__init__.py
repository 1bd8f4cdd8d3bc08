"""Live tailing of loop transcript files."""

from loopdash.live.admission import AdmissionControl, AdmissionDecision
from loopdash.live.broadcast import SubscribeResult, TailBroadcastService
from loopdash.live.registry import TailChannel, TailRegistry, TailWatchEntry
from loopdash.live.timers import DebounceTimer
from loopdash.live.watchers import WatchfilesWatcher

__all__ = [
    "AdmissionControl",
    "AdmissionDecision",
    "DebounceTimer",
    "SubscribeResult",
    "TailBroadcastService",
    "TailChannel",
    "TailRegistry",
    "TailWatchEntry",
    "WatchfilesWatcher",
]
