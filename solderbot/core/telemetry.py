from __future__ import annotations
import copy
import math
import time
import logging
from typing import Callable, Dict, Optional, Tuple

from PySide6 import QtCore

from solderbot.core.data_types import (
    PositionState, TipState, WireFeedState, WireBreakFault, SpoolState,
    FluxState, FanState, FumeExtractorState, FluxMistState, AirBreezeState,
    AirJetPressureState,
)

HEARTBEAT_TIMEOUT_MS = 2000

LINK_DISCONNECTED = "disconnected"
LINK_IDLE = "connected-idle"       # port open, controller not streaming
LINK_STREAMING = "streaming"

_SKIP = object()


def round_half_up(value: float) -> int:
    # the controller rounds .5 up, python rounds it to even
    return int(math.floor(value + 0.5))


def _to_float(value):
    if isinstance(value, bool):
        return _SKIP
    if isinstance(value, (int, float)):
        v = float(value)
    elif isinstance(value, str):
        try:
            v = float(value.strip())
        except ValueError:
            return _SKIP
    else:
        return _SKIP
    return v if math.isfinite(v) else _SKIP


def _to_percent(value):
    v = _to_float(value)
    return v if v is _SKIP else max(0.0, min(100.0, v))


def _to_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    return _SKIP


def _to_str(value):
    if value is None or isinstance(value, (dict, list)):
        return _SKIP
    return str(value)


# payload key -> (record attribute, coercion); several keys may feed one attribute
TIP_FIELDS = {
    "target": ("target", _to_float),
    "heater": ("heater", _to_bool),
    "status": ("status", _to_str),
    "current": ("current", _to_float),
}
WIRE_FEED_FIELDS = {
    "status": ("status", _to_str),
    "message": ("message", _to_str),
    "completedAt": ("completed_at", _to_float),
    "currentFeedRate": ("current_feed_rate", _to_float),
    "feedRate": ("current_feed_rate", _to_float),
}
SPOOL_FIELDS = {
    "wireDiameter": ("wire_diameter_mm", _to_float),
    "wireDiameterMm": ("wire_diameter_mm", _to_float),
    "remainingPercentage": ("remaining_percentage", _to_percent),
    "remainingLength": ("remaining_length_mm", _to_float),
    "remainingLengthMm": ("remaining_length_mm", _to_float),
    "isFeeding": ("is_feeding", _to_bool),
    "netWeight": ("net_weight_g", _to_float),
    "netWeightG": ("net_weight_g", _to_float),
    "initialWeight": ("initial_weight_g", _to_float),
    "initialWeightG": ("initial_weight_g", _to_float),
    "isTared": ("is_tared", _to_bool),
    "lastCycleWireLengthUsed": ("last_cycle_wire_length_used_mm", _to_float),
    "lastCycleWireLengthUsedMm": ("last_cycle_wire_length_used_mm", _to_float),
    "currentFeedRate": ("current_feed_rate_mm_per_s", _to_float),
    "currentFeedRateMmPerS": ("current_feed_rate_mm_per_s", _to_float),
}
FAN_FIELDS = {
    "machine": ("machine", _to_bool),
    "tip": ("tip", _to_bool),
}
FUME_FIELDS = {
    "enabled": ("enabled", _to_bool),
    "speed": ("speed", _to_float),
    "autoMode": ("auto_mode", _to_bool),
}
FLUX_MIST_FIELDS = {
    "enabled": ("enabled", _to_bool),
    "isDispensing": ("is_dispensing", _to_bool),
    "duration": ("duration", _to_float),
    "flowRate": ("flow_rate", _to_float),
    "autoMode": ("auto_mode", _to_bool),
}
AIR_BREEZE_FIELDS = {
    "enabled": ("enabled", _to_bool),
    "isActive": ("is_active", _to_bool),
    "duration": ("duration", _to_float),
    "intensity": ("intensity", _to_float),
    "autoMode": ("auto_mode", _to_bool),
}
AIR_JET_FIELDS = {
    "enabled": ("enabled", _to_bool),
    "isActive": ("is_active", _to_bool),
    "duration": ("duration", _to_float),
    "pressure": ("pressure", _to_float),
    "autoMode": ("auto_mode", _to_bool),
}


def merge_fields(record, payload, fields: Dict[str, Tuple[str, Callable]]) -> bool:
    """Shallow-merge known keys of payload into record. Bad values are skipped one by one."""
    if not isinstance(payload, dict):
        return False
    changed = False
    for key, (attr, coerce) in fields.items():
        if key not in payload:
            continue
        value = coerce(payload[key])
        if value is _SKIP:
            logging.debug(f"Ignored {key}={payload[key]!r}")
            continue
        if getattr(record, attr) != value:
            setattr(record, attr, value)
            changed = True
    return changed


def flux_accepts(previous: Optional[int], new_rounded: int, force: bool = False) -> bool:
    # rises always show, falls only once they reach a full point; noisy readings in between are dropped
    if previous is None or force:
        return True
    return new_rounded > previous or (previous - new_rounded) >= 1


class TelemetryStore(QtCore.QObject):
    """
    Single subscriber for everything the controller pushes.

    Records are long-lived and only the fields present in an update are
    replaced. Z is clamped to the home limit, flux is filtered against
    jitter, and the heartbeat event alone drives link liveness.
    """
    changed           = QtCore.Signal(str)      # record name
    fluxChanged       = QtCore.Signal(int)
    linkStateChanged  = QtCore.Signal(str)
    wireBreakDetected = QtCore.Signal(object)   # WireBreakFault
    spoolAlert        = QtCore.Signal(str)      # "empty" / "low" / ""

    def __init__(self, parent=None, clock: Callable[[], float] = time.monotonic,
                 heartbeat_timeout_ms: int = HEARTBEAT_TIMEOUT_MS):
        super().__init__(parent)
        self._clock = clock
        self.heartbeat_timeout_ms = heartbeat_timeout_ms

        self.position = PositionState()
        self.tip = TipState()
        self.wire_feed = WireFeedState()
        self.wire_break = WireBreakFault()
        self.spool = SpoolState()
        self.flux = FluxState()
        self.fans = FanState()
        self.fume_extractor = FumeExtractorState()
        self.flux_mist = FluxMistState()
        self.air_breeze = AirBreezeState()
        self.air_jet = AirJetPressureState()
        self.controller_sequence: dict = {}

        self._transport_connected = False
        self._last_heartbeat: Optional[float] = None
        self._link_state = LINK_DISCONNECTED
        self._spool_alert = self.spool.alert_level

        self._handlers = {
            "position:update": self._on_position,
            "tip:status": self._on_tip,
            "wire:feed:status": self._on_wire_feed,
            "wire:break": self._on_wire_break,
            "spool:update": self._on_spool,
            "sequence:update": self._on_sequence,
            "flux:update": self._on_flux,
            "fan:update": lambda p: self._merge("fans", self.fans, p, FAN_FIELDS),
            "fumeExtractor:update": lambda p: self._merge("fume_extractor", self.fume_extractor, p, FUME_FIELDS),
            "fluxMist:update": lambda p: self._merge("flux_mist", self.flux_mist, p, FLUX_MIST_FIELDS),
            "airBreeze:update": lambda p: self._merge("air_breeze", self.air_breeze, p, AIR_BREEZE_FIELDS),
            "airJetPressure:update": lambda p: self._merge("air_jet", self.air_jet, p, AIR_JET_FIELDS),
            "arduino:data:received": self._on_heartbeat,
        }

        self._liveness_timer = QtCore.QTimer(self)
        self._liveness_timer.setInterval(250)
        self._liveness_timer.timeout.connect(self.check_liveness)
        self._liveness_timer.start()

    # ---------- entry point ----------
    def handle_event(self, name: str, payload) -> bool:
        handler = self._handlers.get(name)
        if handler is None:
            return False
        try:
            handler(payload)
        except Exception:
            # one bad payload must not take the event loop down
            logging.exception(f"Telemetry handler for '{name}' failed")
        return True

    def _merge(self, key: str, record, payload, fields) -> bool:
        if merge_fields(record, payload, fields):
            self.changed.emit(key)
            return True
        return False

    # ---------- position ----------
    def _on_position(self, payload):
        if not isinstance(payload, dict):
            return
        changed = False
        z = _to_float(payload.get("z"))
        if z is not _SKIP:
            z = min(0.0, z)   # home is the upper limit
            if z != self.position.z:
                self.position.z = z; changed = True
        moving = _to_bool(payload.get("isMoving"))
        if moving is not _SKIP and moving != self.position.is_moving:
            self.position.is_moving = moving; changed = True
        has_saved = _to_bool(payload.get("hasSavedMovement"))
        if has_saved is not _SKIP and has_saved != self.position.has_saved_movement:
            self.position.has_saved_movement = has_saved; changed = True
        saved = _to_float(payload.get("savedMovementDistance"))
        if saved is not _SKIP:
            self.position.saved_movement_z = min(0.0, saved); changed = True
        if changed:
            self.changed.emit("position")

    def record_saved_movement(self, z: float):
        self.position.has_saved_movement = True
        self.position.saved_movement_z = min(0.0, float(z))
        self.changed.emit("position")

    # ---------- tip / wire ----------
    def _on_tip(self, payload):
        self._merge("tip", self.tip, payload, TIP_FIELDS)

    def _on_wire_feed(self, payload):
        if not isinstance(payload, dict):
            return
        self._merge("wire_feed", self.wire_feed, payload, WIRE_FEED_FIELDS)
        brk = payload.get("wireBreak")
        if brk is True or (isinstance(brk, dict) and brk.get("detected") is True):
            info = brk if isinstance(brk, dict) else {}
            self._raise_wire_break(info.get("message"), info.get("timestamp"))

    def _on_wire_break(self, payload):
        if not isinstance(payload, dict) or payload.get("detected") is not True:
            return
        self._raise_wire_break(payload.get("message"), payload.get("timestamp"))

    def _raise_wire_break(self, message, timestamp):
        ts = _to_float(timestamp)
        already = self.wire_break.detected
        self.wire_break = WireBreakFault(
            detected=True,
            timestamp_ms=ts if ts is not _SKIP else time.time() * 1000,
            message=str(message) if message else "Wire break detected",
        )
        self.changed.emit("wire_break")
        if not already:
            logging.error(f"Wire break: {self.wire_break.message}")
            self.wireBreakDetected.emit(copy.copy(self.wire_break))

    def dismiss_wire_break(self):
        if self.wire_break.detected:
            self.wire_break = WireBreakFault()
            self.changed.emit("wire_break")

    # ---------- spool ----------
    def _on_spool(self, payload):
        if self._merge("spool", self.spool, payload, SPOOL_FIELDS):
            self._check_spool_alert()

    def _check_spool_alert(self):
        level = self.spool.alert_level
        if level != self._spool_alert:
            self._spool_alert = level
            self.spoolAlert.emit(level or "")

    def apply_local_tare(self):
        # optimistic, the controller's spool:update will follow the ack
        self.spool.is_tared = True
        self.spool.net_weight_g = 0.0
        self.changed.emit("spool")

    def apply_local_reset(self):
        diameter = self.spool.wire_diameter_mm
        self.spool = SpoolState(wire_diameter_mm=diameter)
        self.changed.emit("spool")
        self._check_spool_alert()

    def apply_local_spool_config(self, wire_diameter_mm: float):
        self.spool.wire_diameter_mm = float(wire_diameter_mm)
        self.changed.emit("spool")

    # ---------- sequence mirror ----------
    def _on_sequence(self, payload):
        if isinstance(payload, dict):
            self.controller_sequence.update(payload)
            self.changed.emit("controller_sequence")

    # ---------- flux ----------
    def _on_flux(self, payload):
        force = False
        raw = None
        if isinstance(payload, dict):
            for key in ("value", "percentage", "level"):
                if key in payload:
                    raw = payload[key]
                    break
            force = payload.get("force") is True
            merge_fields(self.flux, payload, {
                "unit": ("unit", _to_str),
                "message": ("message", _to_str),
                "volume": ("volume", _to_float),
                "remainingVolume": ("volume", _to_float),
                "updatedAt": ("updated_at", _to_float),
                "timestamp": ("updated_at", _to_float),
            })
        elif not isinstance(payload, bool):
            raw = payload

        numeric = _to_float(raw) if raw is not None else _SKIP
        if numeric is not _SKIP:
            rounded = round_half_up(max(0.0, min(100.0, numeric)))
            previous = self.flux.percentage
            if rounded != previous and flux_accepts(previous, rounded, force):
                self.flux.percentage = rounded
                self.fluxChanged.emit(rounded)
        self.changed.emit("flux")

    # ---------- liveness ----------
    def _on_heartbeat(self, payload=None):
        self._last_heartbeat = self._clock()
        self.check_liveness()

    def set_transport_connected(self, connected: bool):
        self._transport_connected = bool(connected)
        if not connected:
            self._last_heartbeat = None
        self.check_liveness()

    @property
    def link_state(self) -> str:
        if not self._transport_connected:
            return LINK_DISCONNECTED
        if self._last_heartbeat is None:
            return LINK_IDLE
        if (self._clock() - self._last_heartbeat) * 1000 > self.heartbeat_timeout_ms:
            return LINK_IDLE
        return LINK_STREAMING

    def check_liveness(self):
        state = self.link_state
        if state != self._link_state:
            self._link_state = state
            logging.info(f"Controller link: {state}")
            self.linkStateChanged.emit(state)

    # ---------- snapshots ----------
    def snapshot(self) -> dict:
        return {
            "position": copy.copy(self.position),
            "tip": copy.copy(self.tip),
            "wire_feed": copy.copy(self.wire_feed),
            "wire_break": copy.copy(self.wire_break),
            "spool": copy.copy(self.spool),
            "flux": copy.copy(self.flux),
            "fans": copy.copy(self.fans),
            "fume_extractor": copy.copy(self.fume_extractor),
            "flux_mist": copy.copy(self.flux_mist),
            "air_breeze": copy.copy(self.air_breeze),
            "air_jet": copy.copy(self.air_jet),
            "controller_sequence": dict(self.controller_sequence),
            "link_state": self.link_state,
        }
