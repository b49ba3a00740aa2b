from __future__ import annotations
import copy
import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from PySide6 import QtCore

from solderbot.core.data_types import (
    Stage, PadPosition, SequenceConfig, SequenceState,
)
from solderbot.core.errors import SequenceBusy, CommandInFlight
from solderbot.core.pad_metrics import pad_area_from_dict
from solderbot.core.telemetry import round_half_up

ARRIVAL_TOLERANCE_MM = 0.05
MIN_RETRACT_CLEARANCE_MM = 5.0
MAX_RETRACT_CLEARANCE_MM = 10.0
DEFAULT_WIRE_LENGTH_MM = 5.0
ALL_PADS_COMPLETE = "All pads complete"
STOPPED_BY_USER = "Stopped by user"

# config field -> (command, payload key)
CONFIG_COMMANDS = [
    ("pre_heat_dwell_ms", "sequence:preheat-dwell:set", "timeMs"),
    ("cooling_ms", "sequence:cooling:set", "timeMs"),
    ("flux_before_pre_heat", "sequence:flux-timing:set", "enabled"),
    ("multiple_passes", "sequence:multiple-passes:set", "enabled"),
    ("large_pad_threshold_mm2", "sequence:large-pad-threshold:set", "thresholdMm2"),
    ("passes_per_large_pad", "sequence:passes-per-large-pad:set", "passes"),
]

_TIMED_STAGES = (Stage.FLUX_APPLICATION, Stage.PRE_HEAT_DWELL, Stage.DISPENSE,
                 Stage.COOLING, Stage.CLEANING)
_MOVE_STAGES = (Stage.POSITIONING, Stage.RETRACTING)


def _clamp(v, lo, hi):
    return max(lo, min(hi, v))


def clamp_config(config: SequenceConfig) -> SequenceConfig:
    return SequenceConfig(
        pre_heat_dwell_ms=int(_clamp(int(config.pre_heat_dwell_ms), 0, 5000)),
        cooling_ms=int(_clamp(int(config.cooling_ms), 0, 10000)),
        flux_before_pre_heat=bool(config.flux_before_pre_heat),
        multiple_passes=bool(config.multiple_passes),
        large_pad_threshold_mm2=float(_clamp(float(config.large_pad_threshold_mm2), 1.0, 100.0)),
        passes_per_large_pad=int(_clamp(int(config.passes_per_large_pad), 1, 5)),
    )


@dataclass
class RunOptions:
    wire_length_mm: float = DEFAULT_WIRE_LENGTH_MM
    retract_clearance_mm: float = 7.5
    wire_diameter_mm: float = 0.5
    feed_rate_mm_s: float = 8.0
    flux_mist_ms: int = 500
    air_jet_ms: int = 200
    cleaning: bool = True
    dispense_timeout_ms: int = 10000

    def clamped(self) -> "RunOptions":
        return replace(self, retract_clearance_mm=_clamp(float(self.retract_clearance_mm),
                                                         MIN_RETRACT_CLEARANCE_MM,
                                                         MAX_RETRACT_CLEARANCE_MM))


def pad_position_from(item) -> PadPosition:
    if isinstance(item, PadPosition):
        return PadPosition(z=min(0.0, float(item.z)), area=item.area)
    if isinstance(item, dict):
        z = float(item.get("z", 0.0))
        area = pad_area_from_dict(item)
        return PadPosition(z=min(0.0, z), area=area)
    return PadPosition(z=min(0.0, float(item)))


def passes_for(pad: PadPosition, config: SequenceConfig) -> int:
    if config.multiple_passes and pad.area is not None and pad.area >= config.large_pad_threshold_mm2:
        return max(1, int(config.passes_per_large_pad))
    return 1


def pad_stages(config: SequenceConfig) -> List[Stage]:
    if config.flux_before_pre_heat:
        head = [Stage.FLUX_APPLICATION, Stage.POSITIONING]
    else:
        head = [Stage.POSITIONING, Stage.FLUX_APPLICATION]
    return head + [Stage.PRE_HEAT_DWELL, Stage.DISPENSE, Stage.COOLING]


class SequenceOrchestrator(QtCore.QObject):
    """
    State machine for a soldering run over a list of pads.

    Stage waits are one single-shot QTimer; motion and wire-feed stages
    advance on controller events routed in through `handle_event`. Only
    this object writes SequenceState and SequenceConfig.
    """
    stateChanged  = QtCore.Signal(object)   # SequenceState snapshot
    runFinished   = QtCore.Signal(str)
    errorRaised   = QtCore.Signal(str)
    configApplied = QtCore.Signal()

    def __init__(self, dispatcher, telemetry=None, config: Optional[SequenceConfig] = None,
                 options: Optional[RunOptions] = None, parent=None):
        super().__init__(parent)
        self.dispatcher = dispatcher
        self.telemetry = telemetry
        self.config = clamp_config(config or SequenceConfig())
        self.default_options = (options or RunOptions()).clamped()
        self.state = SequenceState()

        self._pads: List[PadPosition] = []
        self._options = self.default_options
        self._stages: List[Stage] = pad_stages(self.config)
        self._move_target: Optional[float] = None
        self._completed_while_paused = False
        self._config_acks_outstanding = 0

        self.stage_timer = QtCore.QTimer(self)
        self.stage_timer.setSingleShot(True)
        self.stage_timer.timeout.connect(self._on_stage_timeout)

    # ---------- snapshots ----------
    def snapshot(self) -> SequenceState:
        return replace(self.state, wire_length_per_pad=list(self.state.wire_length_per_pad))

    def config_snapshot(self) -> SequenceConfig:
        return copy.copy(self.config)

    @property
    def is_idle(self) -> bool:
        return self.state.stage == Stage.IDLE

    def _publish(self):
        s = self.state
        if s.is_active and s.total_pads:
            s.progress_percent = round_half_up(
                100.0 * (s.current_pad + s.current_pass / s.max_passes) / s.total_pads)
        self.stateChanged.emit(self.snapshot())

    # ---------- configuration ----------
    def apply_config(self, config: SequenceConfig) -> SequenceConfig:
        if not self.is_idle:
            raise SequenceBusy("Sequence configuration can only be changed while idle")
        for _, command, _ in CONFIG_COMMANDS:
            if self.dispatcher.is_busy(command):
                raise CommandInFlight(command)

        self.config = clamp_config(config)
        self._stages = pad_stages(self.config)
        logging.info(f"Sequence config applied: {self.config}")

        self._config_acks_outstanding = 0
        for attr, command, key in CONFIG_COMMANDS:
            sent = self.dispatcher.send(command, {key: getattr(self.config, attr)},
                                        on_ack=self._on_config_ack)
            if sent is not None:
                self._config_acks_outstanding += 1
        return self.config_snapshot()

    def _on_config_ack(self, ack: dict):
        self._config_acks_outstanding -= 1
        if self._config_acks_outstanding == 0:
            self.configApplied.emit()

    # ---------- run control ----------
    def start(self, pad_positions=None, config: Optional[SequenceConfig] = None,
              options: Optional[RunOptions] = None) -> bool:
        if not self.is_idle:
            logging.warning(f"Start ignored, sequence is {self.state.stage_label}")
            return False
        if not self.dispatcher.is_ready:
            logging.warning("Start rejected: controller not connected")
            return False

        pads = [pad_position_from(p) for p in (pad_positions or [])]
        if not pads:
            pos = self.telemetry.position if self.telemetry is not None else None
            if pos is not None and pos.has_saved_movement and pos.saved_movement_z is not None:
                pads = [PadPosition(z=min(0.0, pos.saved_movement_z))]
            else:
                logging.warning("Start rejected: no pad positions and no saved movement")
                return False

        if config is not None:
            self.apply_config(config)

        self._options = (options or self.default_options).clamped()
        self._pads = pads
        self._completed_while_paused = False
        self.state = SequenceState(
            is_active=True,
            total_pads=len(pads),
            max_passes=passes_for(pads[0], self.config),
            wire_length_per_pad=[0.0] * len(pads),
        )

        self.dispatcher.send("sequence:start", {
            "padPositions": [{"z": p.z, "area": p.area} for p in pads],
            "options": {
                "wireLength": self._options.wire_length_mm,
                "retractClearance": self._options.retract_clearance_mm,
                "feedRate": self._options.feed_rate_mm_s,
            },
        })
        logging.info(f"Sequence started: {len(pads)} pad(s)")
        self._enter(self._stages[0])
        return True

    def pause(self) -> bool:
        s = self.state
        if not s.is_active or s.is_paused or s.stage in (Stage.IDLE, Stage.ERROR):
            return False
        self.stage_timer.stop()
        s.is_paused = True
        self.dispatcher.send("sequence:pause")
        logging.info(f"Sequence paused in {s.stage_label}")
        self._publish()
        return True

    def resume(self) -> bool:
        s = self.state
        if not s.is_paused:
            return False
        s.is_paused = False
        self.dispatcher.send("sequence:resume")
        logging.info(f"Sequence resumed in {s.stage_label}")
        if self._completed_while_paused:
            self._completed_while_paused = False
            self._publish()
            self._advance()
            return True
        self._start_stage_timer(s.stage)
        self._publish()
        return True

    def stop(self) -> bool:
        if self.is_idle:
            return False
        self.stage_timer.stop()
        self._move_target = None
        self._completed_while_paused = False
        self.state = SequenceState(error_message=STOPPED_BY_USER)
        self.dispatcher.send("sequence:stop")
        logging.info("Sequence stopped by user")
        self._publish()
        return True

    def fault(self, reason) -> bool:
        """Force ERROR from an active run. `reason` is a HardwareFault or a plain message."""
        message = str(reason)
        s = self.state
        if not s.is_active:
            logging.info(f"Fault while not running: {message}")
            return False
        self.stage_timer.stop()
        self._move_target = None
        self._completed_while_paused = False
        s.stage = Stage.ERROR
        s.is_active = False
        s.is_paused = False
        s.error_message = message
        logging.error(f"Sequence fault on pad {s.current_pad + 1}: {message}")
        self._publish()
        self.errorRaised.emit(message)
        return True

    def dismiss_error(self) -> bool:
        if self.state.stage != Stage.ERROR:
            return False
        self.state = SequenceState()
        self._publish()
        return True

    # ---------- stage machinery ----------
    def _stage_duration(self, stage: Stage) -> Optional[int]:
        o = self._options
        return {
            Stage.FLUX_APPLICATION: o.flux_mist_ms,
            Stage.PRE_HEAT_DWELL: self.config.pre_heat_dwell_ms,
            Stage.DISPENSE: o.dispense_timeout_ms,
            Stage.COOLING: self.config.cooling_ms,
            Stage.CLEANING: o.air_jet_ms,
        }.get(stage)

    def _start_stage_timer(self, stage: Stage):
        duration = self._stage_duration(stage)
        if duration is not None:
            self.stage_timer.start(max(0, int(duration)))

    def _current_pad(self) -> PadPosition:
        return self._pads[self.state.current_pad]

    def _dispense_length(self) -> float:
        return round(self._options.wire_length_mm / self.state.max_passes, 3)

    def _enter(self, stage: Stage):
        s = self.state
        s.stage = stage
        pad = self._current_pad()
        logging.info(f"Pad {s.current_pad + 1}/{s.total_pads} pass {s.current_pass + 1}/{s.max_passes}: {s.stage_label}")

        if stage == Stage.FLUX_APPLICATION:
            self.dispatcher.send("fluxMist:dispense", {"duration": self._options.flux_mist_ms})
        elif stage == Stage.POSITIONING:
            self._move_target = pad.z
            self.dispatcher.send("axis:move", {"z": pad.z})
        elif stage == Stage.DISPENSE:
            self.dispatcher.send("wire:feed:start", {
                "length": self._dispense_length(),
                "diameter": self._options.wire_diameter_mm,
                "rate": self._options.feed_rate_mm_s,
                "unit": "mm",
                "rateUnit": "mm/s",
            })
        elif stage == Stage.CLEANING:
            self.dispatcher.send("airJetPressure:activate", {"duration": self._options.air_jet_ms})
        elif stage == Stage.RETRACTING:
            self._move_target = min(pad.z + self._options.retract_clearance_mm, 0.0)
            self.dispatcher.send("axis:move", {"z": self._move_target})

        self._start_stage_timer(stage)
        self._publish()

    def _complete(self):
        # a stage's exit condition was met; held back while paused
        if self.state.is_paused:
            self._completed_while_paused = True
            return
        self._advance()

    def _advance(self):
        s = self.state
        stage = s.stage
        self.stage_timer.stop()
        self._move_target = None

        if stage == Stage.DISPENSE:
            used = self._dispense_length()
            s.total_wire_length_used_mm += used
            s.wire_length_per_pad[s.current_pad] += used

        if stage == Stage.COOLING:
            if s.current_pass + 1 < s.max_passes:
                s.current_pass += 1
                self._enter(Stage.DISPENSE)
                return
            self._enter(Stage.CLEANING if self._options.cleaning else Stage.RETRACTING)
            return
        if stage == Stage.CLEANING:
            self._enter(Stage.RETRACTING)
            return
        if stage == Stage.RETRACTING:
            self._next_pad()
            return
        self._enter(self._stages[self._stages.index(stage) + 1])

    def _next_pad(self):
        s = self.state
        s.current_pad += 1
        s.current_pass = 0
        if s.current_pad >= s.total_pads:
            self._finish()
            return
        s.max_passes = passes_for(self._current_pad(), self.config)
        self._enter(self._stages[0])

    def _finish(self):
        s = self.state
        s.stage = Stage.IDLE
        s.is_active = False
        s.is_paused = False
        s.current_pad = s.total_pads
        s.progress_percent = 100
        s.last_completed_label = ALL_PADS_COMPLETE
        logging.info(f"Sequence finished, {s.total_wire_length_used_mm:.2f} mm wire used")
        self._publish()
        self.runFinished.emit(ALL_PADS_COMPLETE)

    def _on_stage_timeout(self):
        s = self.state
        if not s.is_active or s.is_paused:
            return
        if s.stage == Stage.DISPENSE:
            logging.warning(f"No wire feed completion within {self._options.dispense_timeout_ms} ms, continuing")
        if s.stage in _TIMED_STAGES:
            self._advance()

    # ---------- controller events ----------
    def handle_event(self, name: str, payload) -> bool:
        s = self.state
        if not s.is_active or not isinstance(payload, dict):
            return False
        if name == "position:update" and s.stage in _MOVE_STAGES:
            return self._on_position(payload)
        if name == "wire:feed:status" and s.stage == Stage.DISPENSE:
            if payload.get("status") in ("completed", "idle"):
                self._complete()
                return True
        return False

    def _on_position(self, payload: dict) -> bool:
        if self._move_target is None or payload.get("isMoving") is not False:
            return False
        z = payload.get("z")
        if isinstance(z, bool) or not isinstance(z, (int, float)):
            if self.telemetry is None:
                return False
            z = self.telemetry.position.z
        z = min(0.0, float(z))
        if abs(z - self._move_target) > ARRIVAL_TOLERANCE_MM:
            return False
        self._complete()
        return True
