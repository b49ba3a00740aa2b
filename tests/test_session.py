import json

import pytest

from solderbot.core.config import DEFAULT_CONFIG, load_config
from solderbot.core.data_types import Circle, Square, Stage
from solderbot.core.errors import InvalidInput, SequenceBusy
from solderbot.core.session import ConsoleSession, STATE_REQUESTS


def test_connect_pulls_controller_state(session, transport):
    transport.connected = False
    session.connect("FAKE0", 115200)
    assert transport.names() == STATE_REQUESTS
    assert session.telemetry.link_state == "connected-idle"


def test_acks_are_not_treated_as_telemetry(session, transport):
    session.jog(1, 0.5)
    assert transport.last("axis:jog") == {"axis": "z", "direction": 1, "stepSize": 0.5,
                                          "timestamp": transport.last("axis:jog")["timestamp"]}
    assert session.snapshot()["motion_busy"]
    # a second motion command while the first is unacknowledged is refused locally
    statuses = []
    session.statusChanged.connect(lambda m, c: statuses.append(c))
    assert session.home() is None
    assert statuses == ["orange"]

    transport.emit_event("axis:jog:ack", {"success": True})
    assert not session.snapshot()["motion_busy"]
    assert session.home() is not None


def test_save_position_records_saved_movement(session, transport):
    session.save_position()
    transport.emit_event("axis:save:ack", {"success": True, "position": {"z": -7.25}})
    assert session.telemetry.position.has_saved_movement
    assert session.telemetry.position.saved_movement_z == -7.25


def test_save_ack_without_position_uses_current_z(session, transport):
    transport.emit_event("position:update", {"z": -3.0, "isMoving": False})
    session.save_position()
    transport.emit_event("axis:save:ack", {"success": True})
    assert session.telemetry.position.saved_movement_z == -3.0


def test_pad_inputs_replace_whole_group(session):
    m = session.set_pad_inputs(Square(side=5.0), 0.5)
    assert m.area_mm2 == pytest.approx(25.0)
    assert session.metrics is m

    assert session.set_pad_inputs(Square(side=0), 0.5) is None
    assert session.metrics is None
    assert "greater than zero" in session.metrics_error

    assert session.set_pad_inputs(Circle(radius=1.0), -1) is None
    assert session.metrics is None


def test_compensated_target_is_explicit(session, transport):
    with pytest.raises(InvalidInput):
        session.apply_compensated_target()
    session.set_pad_inputs(Square(side=5.0), 0.5)
    assert "tip:target:set" not in transport.names()
    session.apply_compensated_target()
    assert transport.last("tip:target:set")["target"] == 355
    assert transport.last("tip:target:set")["unit"] == "°C"


def test_wire_feed_validation_and_payload(session, transport):
    with pytest.raises(InvalidInput):
        session.start_wire_feed(0)
    with pytest.raises(InvalidInput):
        session.start_wire_feed(5, "fast")
    session.start_wire_feed("3.5", 4)
    feed = transport.last("wire:feed:start")
    assert feed["length"] == 3.5 and feed["rate"] == 4.0
    assert feed["diameter"] == DEFAULT_CONFIG["wire"]["diameter_mm"]
    assert feed["unit"] == "mm" and feed["rateUnit"] == "mm/s"


def test_spool_commands_update_optimistically(session, transport):
    transport.emit_event("spool:update", {"netWeight": 80.0})
    session.tare_spool()
    assert session.telemetry.spool.is_tared
    assert session.telemetry.spool.net_weight_g == 0
    # while the tare is outstanding the button's command class is busy
    assert session.tare_spool() is None
    transport.emit_event("spool:tare:response", {"success": True})

    session.configure_spool(0.8)
    assert transport.last("spool:config:set") == {"wireDiameter": 0.8}
    assert session.telemetry.spool.wire_diameter_mm == 0.8


def test_wire_break_faults_active_run(session, transport):
    transport.emit_event("position:update", {"z": -5.0})
    assert session.start_sequence([{"z": -5.0, "area": 2.0}])
    transport.emit_event("wire:break", {"detected": True, "timestamp": 1700000000000, "message": "Wire snapped"})
    assert session.sequence.state.stage == Stage.ERROR
    assert session.sequence.state.error_message == "Wire snapped"

    session.dismiss_wire_break()
    assert transport.names()[-1] == "wire:break:clear"
    assert not session.telemetry.wire_break.detected
    assert session.sequence.state.stage == Stage.ERROR
    assert session.dismiss_sequence_error()


def test_disconnect_faults_run_and_clears_pending(session, transport):
    session.start_sequence([{"z": -2.0}])
    session.jog(-1)
    transport.disconnect()
    assert session.sequence.state.stage == Stage.ERROR
    assert session.sequence.state.error_message == "Serial connection lost"
    assert not session.dispatcher.is_busy("motion")
    assert session.telemetry.link_state == "disconnected"


def test_sequence_events_reach_orchestrator(session, transport):
    session.start_sequence([{"z": -1.0}])
    orch = session.sequence
    orch.stage_timer.stop(); orch._on_stage_timeout()
    assert orch.state.stage == Stage.POSITIONING
    transport.emit_event("position:update", {"z": -1.0, "isMoving": False})
    assert orch.state.stage == Stage.PRE_HEAT_DWELL
    assert session.telemetry.position.z == -1.0


def test_start_uses_metrics_wire_length(session, transport):
    m = session.set_pad_inputs(Square(side=2.0), 0.5)
    session.start_sequence([{"z": -1.0, "area": 4.0}])
    assert transport.last("sequence:start")["options"]["wireLength"] == pytest.approx(m.plan.length_mm)


def test_start_from_saved_movement_carries_pad_area(session, transport):
    assert not session.start_sequence()
    session.set_pad_inputs(Square(side=5.0), 0.5)
    session.telemetry.record_saved_movement(-8.0)
    assert session.start_sequence()
    assert transport.last("sequence:start")["padPositions"] == [{"z": -8.0, "area": pytest.approx(25.0)}]
    assert session.sequence.state.max_passes == 2


def test_apply_sequence_config_persists(tmp_path, transport, clock):
    path = tmp_path / "config.json"
    s = ConsoleSession(DEFAULT_CONFIG, transport=transport, clock=clock, config_path=str(path))
    cfg = s.sequence.config_snapshot()
    cfg.cooling_ms = 2500
    s.apply_sequence_config(cfg)
    saved = json.loads(path.read_text())
    assert saved["sequence"]["cooling_ms"] == 2500
    assert load_config(str(path))["sequence"]["cooling_ms"] == 2500

    s.start_sequence([{"z": -1.0}])
    with pytest.raises(SequenceBusy):
        s.apply_sequence_config(cfg)


def test_spool_low_sends_wire_alert(session, transport):
    transport.emit_event("spool:update", {"remainingPercentage": 9, "remainingLength": 400})
    alert = transport.last("wire:alert")
    assert alert["level"] == "warning"
    assert alert["percentage"] == 9
    transport.emit_event("spool:update", {"remainingPercentage": 0})
    assert transport.last("wire:alert")["level"] == "critical"


def test_fan_toggle_uses_mirrored_state(session, transport):
    session.toggle_fan("tip")
    assert transport.last("fan:control")["state"] is True
    transport.emit_event("fan:update", {"tip": True})
    session.toggle_fan("tip")
    assert transport.last("fan:control")["state"] is False
    with pytest.raises(InvalidInput):
        session.toggle_fan("exhaust")


def test_config_file_tolerance(tmp_path):
    bad = tmp_path / "broken.json"
    bad.write_text("{ not json")
    assert load_config(str(bad)) == DEFAULT_CONFIG
    partial = tmp_path / "partial.json"
    partial.write_text(json.dumps({"wire": {"diameter_mm": 0.8}}))
    cfg = load_config(str(partial))
    assert cfg["wire"]["diameter_mm"] == 0.8
    assert cfg["wire"]["feed_rate_mm_s"] == DEFAULT_CONFIG["wire"]["feed_rate_mm_s"]
    assert load_config(str(tmp_path / "missing.json")) == DEFAULT_CONFIG


def test_start_while_disconnected_reports_status(session, transport):
    transport.connected = False
    statuses = []
    session.statusChanged.connect(lambda msg, color: statuses.append((msg, color)))
    assert not session.start_sequence([{"z": -2.0}])
    assert statuses and statuses[0][1] == "orange"
    assert "Not connected" in statuses[0][0]
    assert session.sequence.is_idle
    assert transport.sent == []


def test_can_start_needs_target_link_and_idle(session, transport):
    assert not session.can_start()
    assert session.can_start(pad_count=2)
    session.telemetry.record_saved_movement(-4.0)
    assert session.can_start()

    transport.connected = False
    assert not session.can_start(pad_count=2)
    transport.connected = True

    session.start_sequence()
    assert not session.can_start(pad_count=2)
