import pytest

from solderbot.core.data_types import PadPosition, SequenceConfig, Stage
from solderbot.core.errors import SequenceBusy
from solderbot.core.dispatch import CommandDispatcher
from solderbot.core.sequence import (
    RunOptions, SequenceOrchestrator, pad_stages, passes_for, ALL_PADS_COMPLETE, STOPPED_BY_USER,
)

LARGE = PadPosition(z=-10.0, area=25.0)
SMALL = PadPosition(z=-4.0, area=4.0)


def expire(orch):
    """Run the current stage timer to completion."""
    assert orch.stage_timer.isActive(), f"no timer running in {orch.state.stage}"
    orch.stage_timer.stop()
    orch._on_stage_timeout()


def arrive(orch, z):
    return orch.handle_event("position:update", {"z": z, "isMoving": False})


def feed_done(orch):
    return orch.handle_event("wire:feed:status", {"status": "completed"})


def test_stage_tables():
    assert pad_stages(SequenceConfig(flux_before_pre_heat=True))[:3] == [
        Stage.FLUX_APPLICATION, Stage.POSITIONING, Stage.PRE_HEAT_DWELL]
    assert pad_stages(SequenceConfig(flux_before_pre_heat=False))[:3] == [
        Stage.POSITIONING, Stage.FLUX_APPLICATION, Stage.PRE_HEAT_DWELL]


def test_pass_policy():
    cfg = SequenceConfig(multiple_passes=True, large_pad_threshold_mm2=10, passes_per_large_pad=3)
    assert passes_for(PadPosition(area=10.0), cfg) == 3
    assert passes_for(PadPosition(area=9.9), cfg) == 1
    assert passes_for(PadPosition(area=None), cfg) == 1
    cfg.multiple_passes = False
    assert passes_for(PadPosition(area=50.0), cfg) == 1


def test_large_pad_runs_two_passes_then_idles(orchestrator, transport):
    stages, finished = [], []
    orchestrator.stateChanged.connect(lambda s: stages.append(s.stage))
    orchestrator.runFinished.connect(finished.append)

    assert orchestrator.start([LARGE])
    assert transport.last("sequence:start")["padPositions"] == [{"z": -10.0, "area": 25.0}]
    s = orchestrator.state
    assert s.is_active and s.max_passes == 2 and s.stage == Stage.FLUX_APPLICATION
    assert transport.last("fluxMist:dispense") == {"duration": 500}
    assert orchestrator.stage_timer.interval() == 500

    expire(orchestrator)
    assert orchestrator.state.stage == Stage.POSITIONING
    assert transport.last("axis:move")["z"] == -10.0
    assert not orchestrator.stage_timer.isActive()
    assert arrive(orchestrator, -10.02)

    assert orchestrator.state.stage == Stage.PRE_HEAT_DWELL
    expire(orchestrator)

    for pass_no in range(2):
        assert orchestrator.state.stage == Stage.DISPENSE
        assert orchestrator.state.current_pass == pass_no
        feed = transport.last("wire:feed:start")
        assert feed["length"] == 2.5
        assert feed["unit"] == "mm" and feed["rateUnit"] == "mm/s" and feed["rate"] == 8.0
        assert feed_done(orchestrator)
        assert orchestrator.state.stage == Stage.COOLING
        assert orchestrator.stage_timer.interval() == 1000
        expire(orchestrator)

    assert orchestrator.state.stage == Stage.CLEANING
    assert transport.last("airJetPressure:activate") == {"duration": 200}
    expire(orchestrator)

    assert orchestrator.state.stage == Stage.RETRACTING
    assert transport.last("axis:move")["z"] == -2.5
    arrive(orchestrator, -2.5)

    s = orchestrator.state
    assert s.stage == Stage.IDLE and not s.is_active
    assert s.last_completed_label == ALL_PADS_COMPLETE
    assert s.progress_percent == 100
    assert s.total_wire_length_used_mm == pytest.approx(5.0)
    assert s.wire_length_per_pad == [pytest.approx(5.0)]
    assert finished == [ALL_PADS_COMPLETE]
    assert stages.count(Stage.DISPENSE) == 2
    # flux and dwell are not repeated for the second pass
    assert stages.count(Stage.FLUX_APPLICATION) == 1
    assert stages.count(Stage.PRE_HEAT_DWELL) == 1


def test_progress_and_next_pad(orchestrator):
    progress = []
    orchestrator.stateChanged.connect(lambda s: progress.append(s.progress_percent))
    orchestrator.start([SMALL, LARGE])
    assert orchestrator.state.max_passes == 1

    expire(orchestrator)
    arrive(orchestrator, -4.0)
    expire(orchestrator)
    feed_done(orchestrator)
    expire(orchestrator)          # cooling
    expire(orchestrator)          # cleaning
    arrive(orchestrator, 0.0)     # retract: min(-4 + 7.5, 0)

    s = orchestrator.state
    assert s.current_pad == 1 and s.current_pass == 0
    assert s.max_passes == 2
    assert s.stage == Stage.FLUX_APPLICATION
    assert s.progress_percent == 50
    assert progress[0] == 0


def test_flux_after_positioning(dispatcher, telemetry, transport):
    orch = SequenceOrchestrator(dispatcher, telemetry, SequenceConfig(flux_before_pre_heat=False))
    orch.start([SMALL])
    assert orch.state.stage == Stage.POSITIONING
    arrive(orch, -4.0)
    assert orch.state.stage == Stage.FLUX_APPLICATION
    expire(orch)
    assert orch.state.stage == Stage.PRE_HEAT_DWELL


def test_arrival_needs_stopped_axis_near_target(orchestrator):
    orchestrator.start([LARGE])
    expire(orchestrator)
    assert not orchestrator.handle_event("position:update", {"z": -10.0, "isMoving": True})
    assert not arrive(orchestrator, -9.9)
    assert orchestrator.state.stage == Stage.POSITIONING
    assert arrive(orchestrator, -9.97)
    assert orchestrator.state.stage == Stage.PRE_HEAT_DWELL


def test_dispense_fallback_timer(orchestrator):
    orchestrator.start([SMALL])
    expire(orchestrator); arrive(orchestrator, -4.0); expire(orchestrator)
    assert orchestrator.state.stage == Stage.DISPENSE
    assert orchestrator.stage_timer.interval() == 10000
    expire(orchestrator)
    assert orchestrator.state.stage == Stage.COOLING
    assert orchestrator.state.total_wire_length_used_mm == pytest.approx(5.0)


def test_cleaning_can_be_skipped(dispatcher, telemetry):
    orch = SequenceOrchestrator(dispatcher, telemetry, options=RunOptions(cleaning=False))
    orch.start([SMALL])
    expire(orch); arrive(orch, -4.0); expire(orch); feed_done(orch); expire(orch)
    assert orch.state.stage == Stage.RETRACTING


def test_retract_clearance_is_clamped(orchestrator, transport):
    orchestrator.start([LARGE], options=RunOptions(retract_clearance_mm=25.0))
    assert transport.last("sequence:start")["options"]["retractClearance"] == 10.0


def test_pause_resume_restarts_full_duration(dispatcher, telemetry, transport):
    orch = SequenceOrchestrator(dispatcher, telemetry, SequenceConfig(pre_heat_dwell_ms=2000))
    orch.start([SMALL])
    expire(orch); arrive(orch, -4.0)
    assert orch.state.stage == Stage.PRE_HEAT_DWELL

    assert orch.pause()
    assert orch.state.is_paused
    assert not orch.stage_timer.isActive()
    assert transport.names()[-1] == "sequence:pause"
    assert not orch.pause()

    pad, pass_ = orch.state.current_pad, orch.state.current_pass
    assert orch.resume()
    assert transport.names()[-1] == "sequence:resume"
    assert orch.state.stage == Stage.PRE_HEAT_DWELL
    assert not orch.state.is_paused
    assert orch.stage_timer.isActive()
    assert orch.stage_timer.interval() == 2000
    assert orch.stage_timer.remainingTime() > 1900
    assert (orch.state.current_pad, orch.state.current_pass) == (pad, pass_)


def test_completion_while_paused_applies_on_resume(orchestrator):
    orchestrator.start([SMALL])
    expire(orchestrator); arrive(orchestrator, -4.0); expire(orchestrator)
    orchestrator.pause()
    feed_done(orchestrator)
    assert orchestrator.state.stage == Stage.DISPENSE
    orchestrator.resume()
    assert orchestrator.state.stage == Stage.COOLING


def test_paused_timer_expiry_is_ignored(orchestrator):
    orchestrator.start([SMALL])
    orchestrator.pause()
    orchestrator._on_stage_timeout()
    assert orchestrator.state.stage == Stage.FLUX_APPLICATION


def test_stop_discards_progress(orchestrator, transport):
    assert not orchestrator.stop()
    orchestrator.start([LARGE])
    expire(orchestrator)
    assert orchestrator.stop()
    s = orchestrator.state
    assert s.stage == Stage.IDLE and not s.is_active
    assert s.error_message == STOPPED_BY_USER
    assert s.current_pad == 0 and s.progress_percent == 0
    assert transport.names()[-1] == "sequence:stop"
    assert not orchestrator.resume()
    # late events from the aborted run change nothing
    assert not arrive(orchestrator, -10.0)


def test_fault_forces_error_until_dismissed(orchestrator):
    errors = []
    orchestrator.errorRaised.connect(errors.append)
    assert not orchestrator.fault("Wire break")       # nothing running

    orchestrator.start([LARGE])
    expire(orchestrator)
    assert orchestrator.fault("Wire break")
    s = orchestrator.state
    assert s.stage == Stage.ERROR and not s.is_active
    assert s.error_message == "Wire break"
    assert errors == ["Wire break"]
    assert not orchestrator.stage_timer.isActive()
    assert not orchestrator.pause()
    assert not orchestrator.start([SMALL])

    assert orchestrator.dismiss_error()
    assert orchestrator.state.stage == Stage.IDLE
    assert orchestrator.start([SMALL])


def test_stop_is_allowed_from_error(orchestrator):
    orchestrator.start([SMALL])
    orchestrator.fault("Serial connection lost")
    assert orchestrator.stop()
    assert orchestrator.state.stage == Stage.IDLE


def test_start_needs_pads_or_saved_movement(orchestrator, telemetry, transport):
    assert not orchestrator.start([])
    assert transport.sent == []
    assert orchestrator.state.stage == Stage.IDLE

    telemetry.record_saved_movement(-6.5)
    assert orchestrator.start()
    assert orchestrator.state.total_pads == 1
    assert transport.last("sequence:start")["padPositions"] == [{"z": -6.5, "area": None}]


def test_pads_from_dicts(orchestrator, transport):
    orchestrator.start([{"z": -3, "width": 4, "height": 5}, {"z": 2}])
    pads = transport.last("sequence:start")["padPositions"]
    assert pads == [{"z": -3.0, "area": 20.0}, {"z": 0.0, "area": None}]
    assert orchestrator.state.max_passes == 2


def test_apply_config_rejected_while_active(orchestrator):
    before = orchestrator.config_snapshot()
    orchestrator.start([SMALL])
    with pytest.raises(SequenceBusy):
        orchestrator.apply_config(SequenceConfig(cooling_ms=50, passes_per_large_pad=4))
    assert orchestrator.config == before


def test_apply_config_clamps_and_waits_for_all_acks(orchestrator, transport):
    applied = []
    orchestrator.configApplied.connect(lambda: applied.append(True))
    result = orchestrator.apply_config(SequenceConfig(
        pre_heat_dwell_ms=9000, cooling_ms=-5, flux_before_pre_heat=False,
        multiple_passes=False, large_pad_threshold_mm2=0.2, passes_per_large_pad=9))
    assert result == SequenceConfig(5000, 0, False, False, 1.0, 5)

    sent = dict(transport.sent)
    assert sent["sequence:preheat-dwell:set"]["timeMs"] == 5000
    assert sent["sequence:cooling:set"]["timeMs"] == 0
    assert sent["sequence:flux-timing:set"]["enabled"] is False
    assert sent["sequence:multiple-passes:set"]["enabled"] is False
    assert sent["sequence:large-pad-threshold:set"]["thresholdMm2"] == 1.0
    assert sent["sequence:passes-per-large-pad:set"]["passes"] == 5

    d = orchestrator.dispatcher
    for ack in ["sequence:preheat-dwell:ack", "sequence:cooling:ack", "sequence:flux-timing:ack",
                "sequence:multiple-passes:ack", "sequence:large-pad-threshold:ack"]:
        d.handle_event(ack, {"success": True})
    assert applied == []
    d.handle_event("sequence:passes-per-large-pad:ack", {"success": True})
    assert applied == [True]

    # the new ordering takes effect on the next run
    orchestrator.start([SMALL])
    assert orchestrator.state.stage == Stage.POSITIONING


def test_snapshot_is_detached(orchestrator):
    orchestrator.start([SMALL, SMALL])
    snap = orchestrator.snapshot()
    snap.wire_length_per_pad.append(99.0)
    snap.current_pad = 7
    assert orchestrator.state.wire_length_per_pad == [0.0, 0.0]
    assert orchestrator.state.current_pad == 0


@pytest.mark.parametrize("bound", [False, True])
def test_start_refused_without_controller(bound, transport, telemetry, clock):
    transport.connected = False
    orch = SequenceOrchestrator(CommandDispatcher(transport if bound else None, clock=clock),
                                telemetry, options=RunOptions())
    states = []
    orch.stateChanged.connect(states.append)
    assert not orch.start([SMALL])
    assert orch.state.stage == Stage.IDLE
    assert not orch.state.is_active
    assert not orch.stage_timer.isActive()
    assert states == []
    if bound:
        assert transport.sent == []
