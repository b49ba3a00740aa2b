from __future__ import annotations
import math
import logging
from typing import Optional

from solderbot.core.data_types import (
    Square, Rectangle, Circle, Concentric, PadGeometry,
    SolderDeposit, WireSpec, WireFeedPlan, PadMetrics,
)
from solderbot.core.errors import InvalidGeometry, InvalidInput
from solderbot.core.thermal import compute_compensation, pad_category

# Wire feeder calibration (stepper steps per mm of wire)
STEPS_PER_MM = 8


def _dim(value, name: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise InvalidGeometry(f"{name} must be a number")
    if not math.isfinite(v) or v <= 0:
        raise InvalidGeometry(f"{name} must be greater than zero")
    return v


# -------------------- area --------------------
def compute_area(geometry: PadGeometry) -> float:
    if isinstance(geometry, Square):
        s = _dim(geometry.side, "Side length")
        return s * s
    if isinstance(geometry, Rectangle):
        return _dim(geometry.length, "Length") * _dim(geometry.width, "Width")
    if isinstance(geometry, Circle):
        r = _dim(geometry.radius, "Radius")
        return math.pi * r * r
    if isinstance(geometry, Concentric):
        o = _dim(geometry.outer_radius, "Outer radius")
        i = _dim(geometry.inner_radius, "Inner radius")
        if o <= i:
            raise InvalidGeometry("Outer radius must be larger than inner radius")
        return math.pi * (o * o - i * i)
    raise InvalidGeometry(f"Unknown pad shape: {geometry!r}")


def geometry_from_dict(data: dict) -> PadGeometry:
    """Build a pad geometry from form/config values, e.g. {"shape": "circle", "radius": 1.25}."""
    if not isinstance(data, dict):
        raise InvalidGeometry("Pad geometry must be a mapping")
    shape = str(data.get("shape", "")).lower()
    try:
        if shape == "square":
            return Square(side=data["side"])
        if shape == "rectangle":
            return Rectangle(length=data["length"], width=data["width"])
        if shape == "circle":
            return Circle(radius=data["radius"])
        if shape == "concentric":
            return Concentric(
                outer_radius=data.get("outer_radius", data.get("outerRadius")),
                inner_radius=data.get("inner_radius", data.get("innerRadius")),
            )
    except KeyError as e:
        raise InvalidGeometry(f"Missing pad dimension {e.args[0]!r}")
    raise InvalidGeometry(f"Unknown pad shape: {shape or '(none)'}")


# -------------------- wire --------------------
def volume_per_mm(diameter_mm: float) -> float:
    r = diameter_mm / 2.0
    return math.pi * r * r * 1.0


def compute_wire_feed_plan(area: float, height_mm: float, diameter_mm: float,
                           steps_per_mm: int = STEPS_PER_MM) -> WireFeedPlan:
    """Wire needed to fill area x height, and the feeder steps for it."""
    try:
        area = float(area); height_mm = float(height_mm); diameter_mm = float(diameter_mm)
    except (TypeError, ValueError):
        raise InvalidInput("Area, solder height and wire diameter must be numbers")
    if not math.isfinite(area) or area <= 0:
        raise InvalidInput("Pad area must be greater than zero")
    if not math.isfinite(height_mm) or height_mm <= 0:
        raise InvalidInput("Solder height must be greater than zero")
    if not math.isfinite(diameter_mm) or diameter_mm <= 0:
        raise InvalidInput("Wire diameter must be greater than zero")

    per_mm = volume_per_mm(diameter_mm)
    if per_mm <= 0:
        raise InvalidInput("Wire volume per mm must be greater than zero")

    volume = area * height_mm
    length = volume / per_mm
    return WireFeedPlan(volume_mm3=volume, length_mm=length, step_count=math.ceil(length * steps_per_mm))


def plan_for(deposit: SolderDeposit, wire: WireSpec) -> WireFeedPlan:
    return compute_wire_feed_plan(compute_area(deposit.geometry), deposit.solder_height_mm, wire.diameter_mm)


def compute_pad_metrics(geometry: PadGeometry, solder_height_mm: float, wire_diameter_mm: float) -> PadMetrics:
    deposit = SolderDeposit(geometry=geometry, solder_height_mm=solder_height_mm)
    wire = WireSpec(diameter_mm=wire_diameter_mm)
    area = compute_area(deposit.geometry)
    plan = plan_for(deposit, wire)
    metrics = PadMetrics(
        geometry=geometry,
        solder_height_mm=float(solder_height_mm),
        wire_diameter_mm=float(wire_diameter_mm),
        area_mm2=area,
        category=pad_category(area),
        volume_per_mm=volume_per_mm(float(wire_diameter_mm)),
        plan=plan,
        thermal=compute_compensation(area),
    )
    logging.info(f"Pad metrics: {geometry.shape} area={area:.4f}mm² wire={plan.length_mm:.2f}mm steps={plan.step_count}")
    return metrics


def pad_area_from_dict(data: dict) -> Optional[float]:
    # Accepts the controller's loose pad descriptions: area, width x height, diameter or full geometry
    if not isinstance(data, dict):
        return None
    try:
        if data.get("area") is not None:
            return float(data["area"])
        if data.get("shape"):
            return compute_area(geometry_from_dict(data))
        if data.get("width") is not None and data.get("height") is not None:
            return float(data["width"]) * float(data["height"])
        if data.get("diameter") is not None:
            r = float(data["diameter"]) / 2.0
            return math.pi * r * r
    except (TypeError, ValueError):
        return None
    return None
