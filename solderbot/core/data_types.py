from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Union


# -------------------- pad geometry --------------------
@dataclass(frozen=True)
class Square:
    side: float
    shape: str = field(default="square", init=False)


@dataclass(frozen=True)
class Rectangle:
    length: float
    width: float
    shape: str = field(default="rectangle", init=False)


@dataclass(frozen=True)
class Circle:
    radius: float
    shape: str = field(default="circle", init=False)


@dataclass(frozen=True)
class Concentric:
    outer_radius: float
    inner_radius: float
    shape: str = field(default="concentric", init=False)


PadGeometry = Union[Square, Rectangle, Circle, Concentric]


@dataclass(frozen=True)
class SolderDeposit:
    geometry: PadGeometry
    solder_height_mm: float


@dataclass(frozen=True)
class WireSpec:
    diameter_mm: float


@dataclass(frozen=True)
class WireFeedPlan:
    volume_mm3: float
    length_mm: float
    step_count: int


@dataclass(frozen=True)
class ThermalCompensation:
    category: Optional[str]
    compensated_temp_c: Optional[int]
    compensation_c: Optional[float]


@dataclass(frozen=True)
class PadMetrics:
    """Everything derived from one set of pad inputs, recomputed as a unit."""
    geometry: PadGeometry
    solder_height_mm: float
    wire_diameter_mm: float
    area_mm2: float
    category: str
    volume_per_mm: float
    plan: WireFeedPlan
    thermal: ThermalCompensation


# -------------------- sequence --------------------
class Stage(str, Enum):
    IDLE = "idle"
    FLUX_APPLICATION = "flux"
    POSITIONING = "positioning"
    PRE_HEAT_DWELL = "preheat"
    DISPENSE = "dispense"
    COOLING = "cooling"
    CLEANING = "cleaning"
    RETRACTING = "retracting"
    ERROR = "error"


STAGE_LABELS = {
    Stage.IDLE: "Idle",
    Stage.FLUX_APPLICATION: "Applying flux",
    Stage.POSITIONING: "Lowering Z axis",
    Stage.PRE_HEAT_DWELL: "Pre-heat dwell",
    Stage.DISPENSE: "Dispensing solder",
    Stage.COOLING: "Post-solder cooling",
    Stage.CLEANING: "Cleaning tip",
    Stage.RETRACTING: "Retracting head",
    Stage.ERROR: "Error",
}


@dataclass
class PadPosition:
    z: float = 0.0
    area: Optional[float] = None   # mm², None -> single pass


@dataclass
class SequenceConfig:
    pre_heat_dwell_ms: int = 500
    cooling_ms: int = 1000
    flux_before_pre_heat: bool = True
    multiple_passes: bool = True
    large_pad_threshold_mm2: float = 10.0
    passes_per_large_pad: int = 2


@dataclass
class SequenceState:
    stage: Stage = Stage.IDLE
    is_active: bool = False
    is_paused: bool = False
    current_pad: int = 0
    total_pads: int = 0
    current_pass: int = 0
    max_passes: int = 1
    progress_percent: int = 0
    last_completed_label: Optional[str] = None
    error_message: Optional[str] = None
    total_wire_length_used_mm: float = 0.0
    wire_length_per_pad: List[float] = field(default_factory=list)

    @property
    def stage_label(self) -> str:
        return STAGE_LABELS[self.stage]


# -------------------- telemetry records --------------------
@dataclass
class PositionState:
    z: float = 0.0
    is_moving: bool = False
    has_saved_movement: bool = False
    saved_movement_z: Optional[float] = None


@dataclass
class TipState:
    target: float = 345.0
    heater: bool = False
    status: str = ""
    current: Optional[float] = None


@dataclass
class WireFeedState:
    status: str = "idle"
    message: str = ""
    completed_at: Optional[float] = None
    current_feed_rate: float = 8.0


@dataclass
class WireBreakFault:
    detected: bool = False
    timestamp_ms: Optional[float] = None
    message: Optional[str] = None


@dataclass
class SpoolState:
    wire_diameter_mm: float = 0.5
    remaining_percentage: float = 100.0
    remaining_length_mm: float = 10000.0
    is_feeding: bool = False
    net_weight_g: float = 0.0
    initial_weight_g: float = 0.0
    is_tared: bool = False
    last_cycle_wire_length_used_mm: float = 0.0
    current_feed_rate_mm_per_s: float = 8.0

    @property
    def is_wire_empty(self) -> bool:
        return self.remaining_percentage <= 0

    @property
    def is_wire_low(self) -> bool:
        return self.remaining_percentage <= 10

    @property
    def alert_level(self) -> Optional[str]:
        # empty wins over low
        if self.is_wire_empty:
            return "empty"
        if self.is_wire_low:
            return "low"
        return None


@dataclass
class FluxState:
    percentage: Optional[int] = None
    unit: str = "%"
    volume: Optional[float] = None
    message: Optional[str] = None
    updated_at: Optional[float] = None


@dataclass
class FanState:
    machine: bool = False
    tip: bool = False


@dataclass
class FumeExtractorState:
    enabled: bool = False
    speed: float = 90.0
    auto_mode: bool = True


@dataclass
class FluxMistState:
    enabled: bool = False
    is_dispensing: bool = False
    duration: float = 500.0
    flow_rate: float = 50.0
    auto_mode: bool = True


@dataclass
class AirBreezeState:
    enabled: bool = False
    is_active: bool = False
    duration: float = 2000.0
    intensity: float = 60.0
    auto_mode: bool = True


@dataclass
class AirJetPressureState:
    enabled: bool = False
    is_active: bool = False
    duration: float = 200.0
    pressure: float = 80.0
    auto_mode: bool = True
