from __future__ import annotations
import copy
import math
import time
import logging
from dataclasses import replace
from typing import Callable, Optional

from PySide6 import QtCore

from solderbot.core.config import (
    DEFAULT_CONFIG, sequence_config_from, store_sequence_config, save_config,
)
from solderbot.core.data_types import PadGeometry, PadMetrics, PadPosition, SequenceConfig
from solderbot.core.dispatch import CommandDispatcher
from solderbot.core.errors import CommandInFlight, HardwareFault, InvalidInput, SolderbotError
from solderbot.core.pad_metrics import compute_pad_metrics
from solderbot.core.sequence import RunOptions, SequenceOrchestrator
from solderbot.core.serial_comm import SerialLink
from solderbot.core.telemetry import TelemetryStore

# pulled once after the link comes up so the mirror starts from controller state
STATE_REQUESTS = [
    "flux:state:request", "fan:state:request", "fumeExtractor:state:request",
    "fluxMist:state:request", "airBreeze:state:request", "airJetPressure:state:request",
    "spool:status:request", "sequence:status:request",
]

FANS = ("machine", "tip")


def _positive(value, what: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{what} must be a number")
    if not math.isfinite(v) or v <= 0:
        raise InvalidInput(f"{what} must be greater than zero")
    return v


class ConsoleSession(QtCore.QObject):
    """
    Owns the transport, dispatcher, telemetry store and orchestrator for one
    operator session. The UI reads snapshots and calls the command methods;
    it never writes shared state itself.
    """
    statusChanged  = QtCore.Signal(str, str)   # msg, color
    metricsChanged = QtCore.Signal(object)     # PadMetrics or None

    def __init__(self, cfg: Optional[dict] = None, transport=None, parent=None,
                 clock: Callable[[], float] = time.monotonic, config_path: Optional[str] = None):
        super().__init__(parent)
        self.cfg = copy.deepcopy(cfg) if cfg is not None else copy.deepcopy(DEFAULT_CONFIG)
        self.config_path = config_path

        self.link = transport if transport is not None else SerialLink(self, simulated=self.cfg.get("simulated", False))
        self.telemetry = TelemetryStore(self, clock=clock,
                                        heartbeat_timeout_ms=self.cfg.get("heartbeat_timeout_ms", 2000))
        self.telemetry.spool.wire_diameter_mm = float(self.cfg["wire"]["diameter_mm"])
        self.dispatcher = CommandDispatcher(self.link, self)
        self.sequence = SequenceOrchestrator(
            self.dispatcher, self.telemetry,
            config=sequence_config_from(self.cfg),
            options=self._run_defaults(),
            parent=self,
        )

        self.metrics: Optional[PadMetrics] = None
        self.metrics_error: Optional[str] = None

        self.link.eventReceived.connect(self.handle_event)
        self.link.connectionChanged.connect(self._on_connection_changed)
        self.link.statusChanged.connect(self.statusChanged)
        self.dispatcher.statusChanged.connect(self.statusChanged)
        self.telemetry.wireBreakDetected.connect(self._on_wire_break)
        self.telemetry.spoolAlert.connect(self._on_spool_alert)

    def _run_defaults(self) -> RunOptions:
        run = self.cfg.get("run", {})
        wire = self.cfg.get("wire", {})
        return RunOptions(
            wire_length_mm=float(wire.get("default_length_mm", 5.0)),
            retract_clearance_mm=float(run.get("retract_clearance_mm", 7.5)),
            wire_diameter_mm=float(wire.get("diameter_mm", 0.5)),
            feed_rate_mm_s=float(wire.get("feed_rate_mm_s", 8.0)),
            flux_mist_ms=int(run.get("flux_mist_ms", 500)),
            air_jet_ms=int(run.get("air_jet_ms", 200)),
            cleaning=bool(run.get("cleaning", True)),
            dispense_timeout_ms=int(run.get("dispense_timeout_ms", 10000)),
        ).clamped()

    # ---------- inbound ----------
    def handle_event(self, name: str, payload):
        if self.dispatcher.handle_event(name, payload):
            return
        self.telemetry.handle_event(name, payload)
        self.sequence.handle_event(name, payload)

    def _on_connection_changed(self, connected: bool):
        self.telemetry.set_transport_connected(connected)
        if connected:
            for request in STATE_REQUESTS:
                self.dispatcher.send(request)
            return
        self.dispatcher.drop_pending()
        self.sequence.fault(HardwareFault("Serial connection lost"))

    def _on_wire_break(self, fault):
        self.statusChanged.emit(f"Wire break: {fault.message}", "red")
        self.sequence.fault(HardwareFault(fault.message or "Wire break detected"))

    def _on_spool_alert(self, level: str):
        if not level:
            return
        spool = self.telemetry.spool
        self.statusChanged.emit(f"Solder wire {level}: {spool.remaining_percentage:.0f}% left", "orange")
        self._send("wire:alert", {
            "level": "critical" if level == "empty" else "warning",
            "percentage": spool.remaining_percentage,
            "length": spool.remaining_length_mm,
        })

    # ---------- outbound helpers ----------
    def _send(self, command: str, payload: Optional[dict] = None, on_ack=None) -> Optional[int]:
        try:
            return self.dispatcher.send(command, payload, on_ack=on_ack)
        except CommandInFlight as e:
            logging.warning(str(e))
            self.statusChanged.emit(str(e), "orange")
            return None

    # ---------- connection ----------
    def connect(self, port: Optional[str] = None, baud: Optional[int] = None):
        port = port or self.cfg.get("port", "")
        baud = int(baud or self.cfg.get("baud", 115200))
        self.cfg["port"], self.cfg["baud"] = port, baud
        self.link.connect(port, baud)

    def disconnect(self):
        self.link.disconnect()

    # ---------- Z axis ----------
    def jog(self, direction: int, step_mm: Optional[float] = None) -> Optional[int]:
        step = _positive(step_mm if step_mm is not None else self.cfg.get("jog_step_mm", 1.0), "Step size")
        return self._send("axis:jog", {"axis": "z", "direction": 1 if direction > 0 else -1, "stepSize": step})

    def home(self) -> Optional[int]:
        return self._send("axis:home")

    def save_position(self) -> Optional[int]:
        return self._send("axis:save", on_ack=self._on_save_ack)

    def _on_save_ack(self, ack: dict):
        if ack.get("error"):
            self.statusChanged.emit(f"Save failed: {ack['error']}", "red")
            return
        z = None
        position = ack.get("position")
        if isinstance(position, dict) and isinstance(position.get("z"), (int, float)):
            z = position["z"]
        elif isinstance(ack.get("savedMovementDistance"), (int, float)):
            z = ack["savedMovementDistance"]
        if z is None:
            z = self.telemetry.position.z
        self.telemetry.record_saved_movement(z)
        self.statusChanged.emit(f"Saved Z = {self.telemetry.position.saved_movement_z:.2f} mm", "green")

    def set_component_height(self, height_mm) -> Optional[int]:
        height = _positive(height_mm, "Component height")
        return self._send("component:height:set", {"height": height, "unit": "mm"})

    # ---------- tip ----------
    def set_tip_target(self, target_c) -> Optional[int]:
        target = _positive(target_c, "Temperature")
        return self._send("tip:target:set", {"target": target, "unit": "°C"})

    def apply_compensated_target(self) -> Optional[int]:
        suggestion = self.metrics.thermal.compensated_temp_c if self.metrics else None
        if suggestion is None:
            raise InvalidInput("No compensated temperature to apply, enter pad dimensions first")
        return self.set_tip_target(suggestion)

    def set_heater(self, enabled: bool) -> Optional[int]:
        return self._send("tip:heater:set", {"enabled": bool(enabled)})

    # ---------- wire ----------
    def start_wire_feed(self, length_mm, rate_mm_s=None) -> Optional[int]:
        length = _positive(length_mm, "Wire length")
        rate = _positive(rate_mm_s if rate_mm_s is not None else self.cfg["wire"]["feed_rate_mm_s"], "Wire feed rate")
        return self._send("wire:feed:start", {
            "length": length,
            "diameter": self.telemetry.spool.wire_diameter_mm,
            "rate": rate,
            "unit": "mm",
            "rateUnit": "mm/s",
        })

    def tare_spool(self) -> Optional[int]:
        request = self._send("spool:tare")
        if request is not None:
            self.telemetry.apply_local_tare()
        return request

    def reset_spool(self) -> Optional[int]:
        request = self._send("spool:reset")
        if request is not None:
            self.telemetry.apply_local_reset()
        return request

    def configure_spool(self, wire_diameter_mm) -> Optional[int]:
        diameter = _positive(wire_diameter_mm, "Wire diameter")
        request = self._send("spool:config:set", {"wireDiameter": diameter})
        if request is not None:
            self.telemetry.apply_local_spool_config(diameter)
            self.cfg["wire"]["diameter_mm"] = diameter
        return request

    def dismiss_wire_break(self):
        self.telemetry.dismiss_wire_break()
        self._send("wire:break:clear")

    # ---------- fans ----------
    def toggle_fan(self, fan: str) -> Optional[int]:
        if fan not in FANS:
            raise InvalidInput(f"Unknown fan: {fan}")
        state = not getattr(self.telemetry.fans, fan)
        return self._send("fan:control", {"fan": fan, "state": state})

    # ---------- pad metrics ----------
    def set_pad_inputs(self, geometry: PadGeometry, solder_height_mm, wire_diameter_mm=None) -> Optional[PadMetrics]:
        """Recompute the whole derived group; any previous result is dropped first."""
        self.metrics = None
        self.metrics_error = None
        diameter = wire_diameter_mm if wire_diameter_mm is not None else self.telemetry.spool.wire_diameter_mm
        try:
            self.metrics = compute_pad_metrics(geometry, solder_height_mm, diameter)
        except SolderbotError as e:
            self.metrics_error = str(e)
            logging.info(f"Pad metrics not computed: {e}")
        self.metricsChanged.emit(self.metrics)
        return self.metrics

    def clear_pad_inputs(self):
        self.metrics = None
        self.metrics_error = None
        self.metricsChanged.emit(None)

    # ---------- sequence ----------
    def start_sequence(self, pad_positions=None, wire_length_mm=None, retract_clearance_mm=None,
                       config: Optional[SequenceConfig] = None) -> bool:
        if not self.dispatcher.is_ready:
            self.statusChanged.emit("Not connected: connect to the controller before starting", "orange")
            return False
        options = self.sequence.default_options
        if wire_length_mm is not None:
            length = _positive(wire_length_mm, "Wire length")
        elif self.metrics is not None:
            length = self.metrics.plan.length_mm
        else:
            length = options.wire_length_mm
        options = replace(
            options,
            wire_length_mm=length,
            wire_diameter_mm=self.telemetry.spool.wire_diameter_mm,
            retract_clearance_mm=float(retract_clearance_mm) if retract_clearance_mm is not None
            else options.retract_clearance_mm,
        )

        pads = list(pad_positions or [])
        position = self.telemetry.position
        if not pads and position.has_saved_movement and position.saved_movement_z is not None:
            area = self.metrics.area_mm2 if self.metrics else None
            pads = [PadPosition(z=position.saved_movement_z, area=area)]

        started = self.sequence.start(pads, config=config, options=options)
        if not started:
            self.statusChanged.emit("Nothing to solder: save a Z position or add pads", "orange")
        return started

    def can_start(self, pad_count: int = 0) -> bool:
        """Whether Start is worth offering: idle, linked, and something to solder."""
        position = self.telemetry.position
        has_target = pad_count > 0 or (position.has_saved_movement and position.saved_movement_z is not None)
        return self.sequence.is_idle and self.dispatcher.is_ready and has_target

    def pause_sequence(self) -> bool:
        return self.sequence.pause()

    def resume_sequence(self) -> bool:
        return self.sequence.resume()

    def stop_sequence(self) -> bool:
        return self.sequence.stop()

    def dismiss_sequence_error(self) -> bool:
        return self.sequence.dismiss_error()

    def apply_sequence_config(self, config: SequenceConfig) -> SequenceConfig:
        applied = self.sequence.apply_config(config)
        store_sequence_config(self.cfg, applied)
        if self.config_path:
            try:
                save_config(self.cfg, self.config_path)
            except OSError as e:
                logging.error(f"Config save error ({self.config_path}): {e}")
        return applied

    # ---------- snapshots ----------
    def snapshot(self) -> dict:
        snap = self.telemetry.snapshot()
        snap["sequence"] = self.sequence.snapshot()
        snap["sequence_config"] = self.sequence.config_snapshot()
        snap["metrics"] = self.metrics
        snap["metrics_error"] = self.metrics_error
        snap["motion_busy"] = self.dispatcher.is_busy("motion")
        snap["connected"] = bool(getattr(self.link, "connected", False))
        return snap
