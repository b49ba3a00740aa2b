from __future__ import annotations
import json
import time
import logging
from typing import Optional

import serial
import serial.tools.list_ports
from PySide6 import QtCore

SIMULATED_PORT = "Simulated Controller"
HEARTBEAT_EVENT = "arduino:data:received"


def encode_event(name: str, payload: Optional[dict] = None) -> bytes:
    # one JSON object per line: {"event": "...", "payload": {...}}
    line = json.dumps({"event": name, "payload": payload or {}}, separators=(",", ":"))
    return (line + "\n").encode("utf-8")


def decode_line(raw: bytes):
    """Returns (event, payload) or None for anything that is not an event line."""
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        msg = json.loads(text)
    except json.JSONDecodeError:
        logging.debug(f"RX (not JSON): {text}")
        return None
    if not isinstance(msg, dict) or not isinstance(msg.get("event"), str):
        logging.debug(f"RX (no event): {text}")
        return None
    payload = msg.get("payload")
    return msg["event"], payload if payload is not None else {}


class SerialLink(QtCore.QObject):
    statusChanged     = QtCore.Signal(str, str)   # msg, color
    portsChanged      = QtCore.Signal(list)
    eventReceived     = QtCore.Signal(str, object)
    connectionChanged = QtCore.Signal(bool)

    def __init__(self, parent=None, simulated: bool = False):
        super().__init__(parent)
        self.ser: Optional[serial.Serial] = None
        self.port_name = ""
        self.baud = 115200
        self.connected = False
        self.simulated = simulated
        self.sim: Optional[SimulatedController] = None
        self._rx = b""

        self._poll_timer = QtCore.QTimer(self)
        self._poll_timer.setInterval(20)
        self._poll_timer.timeout.connect(self._poll)

    def available_ports(self):
        ports = []
        try:
            ports = [p.device for p in serial.tools.list_ports.comports()]
        except OSError as e:
            logging.error(f"Serial scan error: {e}")
        if self.simulated:
            ports.append(SIMULATED_PORT)
        return ports

    def refresh_ports(self):
        self.portsChanged.emit(self.available_ports())

    def connect(self, port: str, baud: int):
        if self.connected:
            self.disconnect()
        self.port_name = port
        self.baud = baud

        if port == SIMULATED_PORT:
            self.sim = SimulatedController(self)
            self.sim.emitted.connect(self._deliver)
            self.connected = True
            self.statusChanged.emit(f"Simulated controller @ {baud}", "blue")
            self.connectionChanged.emit(True)
            self.sim.start()
            return

        try:
            self.ser = serial.Serial(port, baud, timeout=0)
        except (serial.SerialException, OSError, ValueError) as e:
            self.connected = False
            self.ser = None
            logging.error(f"Connect error: {e}")
            self.statusChanged.emit(f"Error: {e}", "red")
            return

        self._rx = b""
        self.connected = True
        self._poll_timer.start()
        logging.info(f"Connected to {port} @ {baud}")
        self.statusChanged.emit(f"Connected: {port} @ {baud}", "green")
        self.connectionChanged.emit(True)

    def disconnect(self):
        self._poll_timer.stop()
        if self.sim is not None:
            self.sim.stop()
            self.sim.setParent(None)
            self.sim = None
        if self.ser:
            try:
                self.ser.close()
            except (serial.SerialException, OSError) as e:
                logging.debug(f"Close error: {e}")
        self.ser = None
        was_connected = self.connected
        self.connected = False
        self.statusChanged.emit("Disconnected", "orange")
        if was_connected:
            self.connectionChanged.emit(False)

    # ---------- TX ----------
    def _write_raw(self, b: bytes):
        if not self.connected or not self.ser:
            return
        try:
            self.ser.write(b)
        except (serial.SerialException, OSError) as e:
            logging.error(f"Write error: {e}")
            self.statusChanged.emit("Write Error", "red")
            self.disconnect()

    def send_event(self, name: str, payload: Optional[dict] = None):
        if not self.connected:
            return
        if self.sim is not None:
            self.sim.receive(name, dict(payload or {}))
            return
        self._write_raw(encode_event(name, payload))

    # ---------- RX ----------
    def _poll(self):
        if not self.ser:
            return
        try:
            waiting = self.ser.in_waiting
            if not waiting:
                return
            self._rx += self.ser.read(waiting)
        except (serial.SerialException, OSError) as e:
            logging.error(f"Read error: {e}")
            self.statusChanged.emit("Read Error", "red")
            self.disconnect()
            return
        self.feed(b"")

    def feed(self, data: bytes):
        """Consume raw bytes and emit one event per complete line."""
        self._rx += data
        while b"\n" in self._rx:
            line, self._rx = self._rx.split(b"\n", 1)
            decoded = decode_line(line)
            if decoded is not None:
                self._deliver(*decoded)

    def _deliver(self, name: str, payload):
        self.eventReceived.emit(name, payload)
        self.eventReceived.emit(HEARTBEAT_EVENT, {"timestamp": int(time.time() * 1000)})


class SimulatedController(QtCore.QObject):
    """
    Stands in for the controller board: answers acks, moves Z, feeds wire
    and streams tip temperature so the console can be driven without
    hardware attached.
    """
    emitted = QtCore.Signal(str, object)

    ACKS = {
        "axis:jog": "axis:jog:ack",
        "axis:home": "axis:home:ack",
        "axis:save": "axis:save:ack",
        "component:height:set": "component:height:ack",
        "spool:config:set": "spool:config:response",
        "spool:reset": "spool:reset:response",
        "spool:tare": "spool:tare:response",
    }

    def __init__(self, parent=None):
        super().__init__(parent)
        self.z = 0.0
        self.saved_z: Optional[float] = None
        self.tip_target = 345.0
        self.tip_current = 25.0
        self.heater = False
        self.flux = 100.0
        self.remaining_length_mm = 10000.0
        self.running = False

        self._stream = QtCore.QTimer(self)
        self._stream.setInterval(500)
        self._stream.timeout.connect(self._tick)

    def start(self):
        self.running = True
        self._stream.start()
        self._later(0, "position:update", {"z": self.z, "isMoving": False})

    def stop(self):
        self.running = False
        self._stream.stop()

    def _emit_if_running(self, name: str, payload: dict):
        if self.running:
            self.emitted.emit(name, payload)

    def _later(self, ms: int, name: str, payload: dict):
        QtCore.QTimer.singleShot(ms, lambda: self._emit_if_running(name, payload))

    def _tick(self):
        # first-order approach to the setpoint when heating, ambient otherwise
        goal = self.tip_target if self.heater else 25.0
        self.tip_current += (goal - self.tip_current) * 0.2
        self.emitted.emit("tip:status", {
            "target": self.tip_target, "heater": self.heater,
            "status": "heating" if self.heater else "off",
            "current": round(self.tip_current, 1),
        })

    def _move_to(self, z: float, delay_ms: int = 200):
        self.z = min(0.0, z)
        self._later(0, "position:update", {"isMoving": True})
        self._later(delay_ms, "position:update", {"z": self.z, "isMoving": False})

    def receive(self, name: str, payload: dict):
        logging.debug(f"SIM RX {name}: {payload}")
        if name == "axis:jog":
            step = float(payload.get("stepSize", 1.0))
            sign = 1.0 if float(payload.get("direction", 1)) > 0 else -1.0
            self._move_to(self.z + sign * step, 100)
        elif name == "axis:home":
            self._move_to(0.0, 300)
        elif name == "axis:save":
            self.saved_z = self.z
        elif name == "axis:move":
            self._move_to(float(payload.get("z", self.z)))
        elif name == "tip:target:set":
            self.tip_target = float(payload.get("target", self.tip_target))
        elif name == "tip:heater:set":
            self.heater = bool(payload.get("enabled"))
        elif name == "wire:feed:start":
            length = float(payload.get("length", 0.0))
            rate = float(payload.get("rate", 8.0)) or 8.0
            self.remaining_length_mm = max(0.0, self.remaining_length_mm - length)
            self._later(0, "wire:feed:status", {"status": "feeding", "message": f"Feeding {length:.2f} mm"})
            self._later(int(length / rate * 1000), "wire:feed:status", {
                "status": "completed", "message": "Feed complete",
                "completedAt": int(time.time() * 1000),
            })
            self._later(int(length / rate * 1000), "spool:update", {
                "remainingLength": self.remaining_length_mm,
                "remainingPercentage": self.remaining_length_mm / 100.0,
                "lastCycleWireLengthUsed": length,
            })
        elif name == "fluxMist:dispense":
            self.flux = max(0.0, self.flux - 0.5)
            self._later(int(payload.get("duration", 500)), "flux:update", {"percentage": self.flux})
        elif name == "fan:control":
            self._later(0, "fan:update", {payload.get("fan", "machine"): bool(payload.get("state"))})
        elif name == "spool:tare":
            self._later(50, "spool:update", {"isTared": True, "netWeight": 0.0})
        elif name == "spool:reset":
            self.remaining_length_mm = 10000.0
        elif name.startswith("sequence:") and name.endswith(":set"):
            self._later(50, name[:-len(":set")] + ":ack", {"success": True})
            return

        ack = self.ACKS.get(name)
        if ack == "axis:save:ack":
            self._later(50, ack, {"success": True, "position": {"z": self.saved_z}})
        elif ack:
            self._later(50, ack, {"success": True})
