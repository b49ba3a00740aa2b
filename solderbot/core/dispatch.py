from __future__ import annotations
import time
import logging
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from PySide6 import QtCore

from solderbot.core.errors import CommandInFlight, TransportUnavailable

# command -> acknowledgment event
ACK_EVENTS = {
    "axis:jog": "axis:jog:ack",
    "axis:home": "axis:home:ack",
    "axis:save": "axis:save:ack",
    "component:height:set": "component:height:ack",
    "spool:config:set": "spool:config:response",
    "spool:reset": "spool:reset:response",
    "spool:tare": "spool:tare:response",
    "sequence:preheat-dwell:set": "sequence:preheat-dwell:ack",
    "sequence:cooling:set": "sequence:cooling:ack",
    "sequence:flux-timing:set": "sequence:flux-timing:ack",
    "sequence:multiple-passes:set": "sequence:multiple-passes:ack",
    "sequence:large-pad-threshold:set": "sequence:large-pad-threshold:ack",
    "sequence:passes-per-large-pad:set": "sequence:passes-per-large-pad:ack",
}

# commands sharing one in-flight slot; anything else with an ack is its own class
COMMAND_CLASSES = {
    "axis:jog": "motion",
    "axis:home": "motion",
    "axis:save": "motion",
}

# commands whose wire contract carries a millisecond timestamp
TIMESTAMPED = {
    "axis:jog", "axis:home", "axis:save", "axis:move",
    "tip:target:set", "tip:heater:set", "wire:feed:start",
    "component:height:set", "fan:control", "wire:alert",
}


def command_class(command: str) -> str:
    return COMMAND_CLASSES.get(command, command)


@dataclass
class PendingCommand:
    request_id: int
    command: str
    ack_event: str
    command_class: str
    payload: dict
    sent_at: float
    on_ack: Optional[Callable[[dict], None]] = field(default=None, repr=False)


class CommandDispatcher(QtCore.QObject):
    """
    Sends named commands over the transport and matches acknowledgments.

    Ack-bearing commands are recorded in a correlation table keyed by
    request id before they are written; the first matching ack event
    resolves the oldest outstanding request for that ack name. There is
    no timeout: an unanswered command stays pending until its ack arrives
    or the link goes away.
    """
    statusChanged = QtCore.Signal(str, str)        # msg, color
    acknowledged  = QtCore.Signal(int, str, object)  # request id, command, ack payload
    busyChanged   = QtCore.Signal(str, bool)       # command class, busy

    def __init__(self, transport=None, parent=None, clock: Callable[[], float] = time.time):
        super().__init__(parent)
        self.transport = transport
        self._clock = clock
        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingCommand] = {}
        self._by_ack: Dict[str, Deque[int]] = {}

    # ---------- sending ----------
    @property
    def is_ready(self) -> bool:
        return self.transport is not None and bool(getattr(self.transport, "connected", False))

    def send(self, command: str, payload: Optional[dict] = None,
             on_ack: Optional[Callable[[dict], None]] = None) -> Optional[int]:
        payload = dict(payload or {})
        if command in TIMESTAMPED and "timestamp" not in payload:
            payload["timestamp"] = int(self._clock() * 1000)

        if not self.is_ready:
            err = TransportUnavailable(command)
            logging.warning(f"Transport unavailable: {err}")
            self.statusChanged.emit(str(err), "red")
            return None

        ack_event = ACK_EVENTS.get(command)
        request_id = next(self._ids)
        if ack_event:
            cls = command_class(command)
            if self.is_busy(cls):
                raise CommandInFlight(cls)
            self._pending[request_id] = PendingCommand(
                request_id=request_id, command=command, ack_event=ack_event,
                command_class=cls, payload=payload, sent_at=self._clock(), on_ack=on_ack,
            )
            self._by_ack.setdefault(ack_event, deque()).append(request_id)
            self.busyChanged.emit(cls, True)

        logging.debug(f"TX {command} #{request_id}: {payload}")
        self.transport.send_event(command, payload)
        return request_id

    # ---------- acknowledgments ----------
    def handle_event(self, name: str, payload) -> bool:
        """Resolve a pending command if `name` is an ack we are waiting for."""
        queue = self._by_ack.get(name)
        if not queue:
            return False
        request_id = queue.popleft()
        if not queue:
            del self._by_ack[name]
        pending = self._pending.pop(request_id)
        ack = payload if isinstance(payload, dict) else {}
        if ack.get("error"):
            logging.warning(f"{pending.command} #{request_id} rejected: {ack['error']}")

        if not self.is_busy(pending.command_class):
            self.busyChanged.emit(pending.command_class, False)
        if pending.on_ack:
            pending.on_ack(ack)
        self.acknowledged.emit(request_id, pending.command, ack)
        return True

    def is_busy(self, command_or_class: str) -> bool:
        cls = command_class(command_or_class)
        return any(p.command_class == cls for p in self._pending.values())

    def pending(self) -> List[PendingCommand]:
        return sorted(self._pending.values(), key=lambda p: p.request_id)

    def drop_pending(self):
        # link lost: no acks will arrive for anything outstanding
        if not self._pending:
            return
        classes = {p.command_class for p in self._pending.values()}
        logging.warning(f"Dropping {len(self._pending)} unacknowledged command(s)")
        self._pending.clear()
        self._by_ack.clear()
        for cls in classes:
            self.busyChanged.emit(cls, False)
