from __future__ import annotations
import time
import datetime
import logging
from typing import List, Optional

from PySide6 import QtWidgets, QtCore

from solderbot.core.config import CONFIG_FILE, load_config
from solderbot.core.data_types import PadPosition, SequenceConfig, Stage
from solderbot.core.errors import SolderbotError, SequenceBusy
from solderbot.core.pad_metrics import geometry_from_dict
from solderbot.core.session import ConsoleSession
from solderbot.ui.viz_telemetry import TelemetryChart
from solderbot.ui.styling import *

SHAPE_FIELDS = {
    "square": [("side", "Side (mm)")],
    "rectangle": [("length", "Length (mm)"), ("width", "Width (mm)")],
    "circle": [("radius", "Radius (mm)")],
    "concentric": [("outer_radius", "Outer radius (mm)"), ("inner_radius", "Inner radius (mm)")],
}


class MainWindow(QtWidgets.QMainWindow):
    def __init__(self, session: Optional[ConsoleSession] = None, config_path: str = CONFIG_FILE):
        super().__init__()
        self.setWindowTitle("Solderbot – Operator Console")
        self.resize(1400, 900)
        self.setMinimumSize(1200, 800)

        self.session = session or ConsoleSession(load_config(config_path), parent=self, config_path=config_path)
        self.pads: List[PadPosition] = []
        self._t0 = time.monotonic()

        self._build_ui()

        # signals
        s = self.session
        s.statusChanged.connect(self._set_status)
        s.metricsChanged.connect(self._show_metrics)
        s.link.portsChanged.connect(self._fill_ports)
        s.link.connectionChanged.connect(lambda _: self._refresh_start())
        s.telemetry.changed.connect(self._on_telemetry)
        s.telemetry.linkStateChanged.connect(self._show_link_state)
        s.telemetry.fluxChanged.connect(lambda v: self.fluxLabel.setText(f"{v} %"))
        s.dispatcher.busyChanged.connect(lambda *_: self._refresh_busy())
        s.sequence.stateChanged.connect(self._show_sequence)
        s.sequence.runFinished.connect(lambda label: self._set_status(label, "green"))
        s.sequence.errorRaised.connect(lambda msg: self._set_status(f"Sequence error: {msg}", "red"))
        s.sequence.configApplied.connect(lambda: self._set_status("Sequence config acknowledged", "green"))

        self._fill_ports(s.link.available_ports())
        self._show_link_state(s.telemetry.link_state)
        self._show_sequence(s.sequence.snapshot())
        self._refresh_busy()
        self._set_status("Disconnected", "red")

        # chart sampling
        self._chart_timer = QtCore.QTimer(self)
        self._chart_timer.timeout.connect(self._sample_chart)
        self._chart_timer.start(200)

    # ---------- ui ----------
    def _build_ui(self):
        splitter = QtWidgets.QSplitter(self)
        splitter.setOrientation(QtCore.Qt.Orientation.Horizontal)
        self.setCentralWidget(splitter)

        left_scroll = QtWidgets.QScrollArea(); left_scroll.setWidgetResizable(True)
        left = QtWidgets.QWidget(); left_scroll.setWidget(left)
        L = QtWidgets.QVBoxLayout(left); L.setContentsMargins(16,16,16,16); L.setSpacing(14)
        L.addWidget(self._grp_connection())
        L.addWidget(self._grp_pad_metrics())
        L.addWidget(self._grp_tip())
        L.addWidget(self._grp_wire_feed())
        L.addWidget(self._grp_spool())
        L.addWidget(self._grp_manual_z())
        L.addWidget(self._grp_auxiliary())
        L.addStretch(1)

        right_scroll = QtWidgets.QScrollArea(); right_scroll.setWidgetResizable(True)
        right = QtWidgets.QWidget(); right_scroll.setWidget(right)
        R = QtWidgets.QVBoxLayout(right); R.setContentsMargins(16,16,16,16); R.setSpacing(14)
        R.addWidget(self._wire_break_banner())
        R.addWidget(self._grp_readout())
        self.chart = TelemetryChart(self)
        R.addWidget(self.chart)
        R.addWidget(self._grp_sequence())
        R.addStretch(1)

        splitter.addWidget(left_scroll)
        splitter.addWidget(right_scroll)
        splitter.setStretchFactor(0, 1); splitter.setStretchFactor(1, 1)

        self.status_label = QtWidgets.QLabel("")
        self.link_label = QtWidgets.QLabel("")
        self.statusBar().addWidget(self.status_label, 1)
        self.statusBar().addPermanentWidget(self.link_label)

    def _card(self, title: str) -> QtWidgets.QGroupBox:
        g = QtWidgets.QGroupBox(title)
        v = QtWidgets.QVBoxLayout(g)
        v.setContentsMargins(14,14,14,10)
        v.setSpacing(10)
        return g

    def _value_label(self, text: str = "—") -> QtWidgets.QLabel:
        lbl = QtWidgets.QLabel(text); lbl.setProperty("role", "value")
        return lbl

    def _hint_label(self) -> QtWidgets.QLabel:
        lbl = QtWidgets.QLabel(""); lbl.setProperty("role", "hint"); lbl.setWordWrap(True)
        return lbl

    # --- groups
    def _grp_connection(self):
        g = self._card("Connection")
        layout = g.layout()

        row1 = QtWidgets.QHBoxLayout()
        self.portCombo = QtWidgets.QComboBox(); self.portCombo.setMinimumWidth(150)
        self.baudCombo = QtWidgets.QComboBox(); self.baudCombo.addItems(["9600","57600","115200","250000"])
        self.baudCombo.setCurrentText(str(self.session.cfg.get("baud", 115200)))
        self.baudCombo.setFixedWidth(100)
        row1.addWidget(QtWidgets.QLabel("Port:")); row1.addWidget(self.portCombo, 1)
        row1.addWidget(QtWidgets.QLabel("Baud:")); row1.addWidget(self.baudCombo)
        layout.addLayout(row1)

        row2 = QtWidgets.QHBoxLayout()
        btn_connect = QtWidgets.QPushButton("Connect"); btn_connect.setProperty("primary", True)
        btn_disconnect = QtWidgets.QPushButton("Disconnect"); btn_disconnect.setProperty("danger", True)
        btn_refresh = QtWidgets.QPushButton("Refresh")
        row2.addWidget(btn_connect); row2.addWidget(btn_disconnect); row2.addWidget(btn_refresh)
        layout.addLayout(row2)

        btn_refresh.clicked.connect(self.session.link.refresh_ports)
        btn_connect.clicked.connect(lambda: self.session.connect(self.portCombo.currentText(),
                                                                 int(self.baudCombo.currentText())))
        btn_disconnect.clicked.connect(self.session.disconnect)
        return g

    def _grp_pad_metrics(self):
        g = self._card("Pad Soldering Metrics")
        form = QtWidgets.QFormLayout()
        self.shapeCombo = QtWidgets.QComboBox(); self.shapeCombo.addItems(list(SHAPE_FIELDS))
        form.addRow("Shape", self.shapeCombo)
        self.dimEdits = {}
        self.dimRows = {}
        for shape, fields in SHAPE_FIELDS.items():
            for key, label in fields:
                if key in self.dimEdits:
                    continue
                e = QtWidgets.QLineEdit(); e.setPlaceholderText("mm")
                e.textChanged.connect(self._recompute_metrics)
                self.dimEdits[key] = e
                lbl = QtWidgets.QLabel(label)
                form.addRow(lbl, e)
                self.dimRows[key] = (lbl, e)
        self.heightEdit = QtWidgets.QLineEdit("0.5"); self.heightEdit.textChanged.connect(self._recompute_metrics)
        form.addRow("Solder height (mm)", self.heightEdit)
        g.layout().addLayout(form)

        grid = QtWidgets.QGridLayout(); grid.setHorizontalSpacing(12)
        self.metricLabels = {}
        names = [("area", "Area"), ("category", "Category"), ("volume", "Volume"),
                 ("wire", "Wire length"), ("steps", "Steps"), ("temp", "Suggested tip")]
        for i, (key, title) in enumerate(names):
            grid.addWidget(QtWidgets.QLabel(title), i // 2, (i % 2) * 2)
            self.metricLabels[key] = self._value_label()
            grid.addWidget(self.metricLabels[key], i // 2, (i % 2) * 2 + 1)
        g.layout().addLayout(grid)
        self.metricsHint = self._hint_label()
        g.layout().addWidget(self.metricsHint)

        self.shapeCombo.currentTextChanged.connect(self._on_shape_changed)
        self._on_shape_changed(self.shapeCombo.currentText())
        return g

    def _grp_tip(self):
        g = self._card("Tip Heating")
        row = QtWidgets.QHBoxLayout()
        self.tipTargetEdit = QtWidgets.QLineEdit(str(self.session.cfg["tip"]["base_temp_c"]))
        self.tipTargetEdit.setFixedWidth(90)
        btn_set = QtWidgets.QPushButton("Set Target")
        self.heaterBtn = QtWidgets.QPushButton("Heater On"); self.heaterBtn.setProperty("warn", True)
        row.addWidget(QtWidgets.QLabel("Target °C")); row.addWidget(self.tipTargetEdit)
        row.addWidget(btn_set); row.addStretch(1); row.addWidget(self.heaterBtn)
        g.layout().addLayout(row)

        row2 = QtWidgets.QHBoxLayout()
        self.suggestLabel = self._value_label("Suggested: —")
        self.applySuggestBtn = QtWidgets.QPushButton("Apply Suggested"); self.applySuggestBtn.setEnabled(False)
        row2.addWidget(self.suggestLabel, 1); row2.addWidget(self.applySuggestBtn)
        g.layout().addLayout(row2)
        self.tipHint = self._hint_label()
        g.layout().addWidget(self.tipHint)

        btn_set.clicked.connect(lambda: self._guard(self.session.set_tip_target, self.tipTargetEdit.text(), hint=self.tipHint))
        self.heaterBtn.clicked.connect(lambda: self.session.set_heater(not self.session.telemetry.tip.heater))
        self.applySuggestBtn.clicked.connect(lambda: self._guard(self.session.apply_compensated_target, hint=self.tipHint))
        return g

    def _grp_wire_feed(self):
        g = self._card("Wire Feed")
        row = QtWidgets.QHBoxLayout()
        self.feedLengthEdit = QtWidgets.QLineEdit(str(self.session.cfg["wire"]["default_length_mm"])); self.feedLengthEdit.setFixedWidth(80)
        self.feedRateEdit = QtWidgets.QLineEdit(str(self.session.cfg["wire"]["feed_rate_mm_s"])); self.feedRateEdit.setFixedWidth(80)
        btn_feed = QtWidgets.QPushButton("Feed")
        row.addWidget(QtWidgets.QLabel("Length (mm)")); row.addWidget(self.feedLengthEdit)
        row.addWidget(QtWidgets.QLabel("Rate (mm/s)")); row.addWidget(self.feedRateEdit)
        row.addStretch(1); row.addWidget(btn_feed)
        g.layout().addLayout(row)
        self.feedStatus = self._hint_label()
        g.layout().addWidget(self.feedStatus)
        btn_feed.clicked.connect(lambda: self._guard(self.session.start_wire_feed, self.feedLengthEdit.text(),
                                                     self.feedRateEdit.text(), hint=self.feedStatus))
        return g

    def _grp_spool(self):
        g = self._card("Spool Wire")
        grid = QtWidgets.QGridLayout()
        self.spoolLabels = {}
        for i, (key, title) in enumerate([("remaining", "Remaining"), ("length", "Length"),
                                          ("weight", "Net weight"), ("diameter", "Wire Ø")]):
            grid.addWidget(QtWidgets.QLabel(title), i // 2, (i % 2) * 2)
            self.spoolLabels[key] = self._value_label()
            grid.addWidget(self.spoolLabels[key], i // 2, (i % 2) * 2 + 1)
        g.layout().addLayout(grid)

        row = QtWidgets.QHBoxLayout()
        self.diameterEdit = QtWidgets.QLineEdit(str(self.session.telemetry.spool.wire_diameter_mm)); self.diameterEdit.setFixedWidth(70)
        self.spoolConfigBtn = QtWidgets.QPushButton("Set Ø")
        self.tareBtn = QtWidgets.QPushButton("Tare")
        self.spoolResetBtn = QtWidgets.QPushButton("Reset"); self.spoolResetBtn.setProperty("danger", True)
        row.addWidget(self.diameterEdit); row.addWidget(self.spoolConfigBtn)
        row.addStretch(1); row.addWidget(self.tareBtn); row.addWidget(self.spoolResetBtn)
        g.layout().addLayout(row)
        self.spoolHint = self._hint_label()
        g.layout().addWidget(self.spoolHint)

        self.spoolConfigBtn.clicked.connect(lambda: self._guard(self.session.configure_spool, self.diameterEdit.text(), hint=self.spoolHint))
        self.tareBtn.clicked.connect(self.session.tare_spool)
        self.spoolResetBtn.clicked.connect(self.session.reset_spool)
        return g

    def _grp_manual_z(self):
        g = self._card("Manual Z")
        row = QtWidgets.QHBoxLayout()
        self.stepCombo = QtWidgets.QComboBox(); self.stepCombo.addItems(["0.1", "0.5", "1.0", "5.0", "10.0"])
        self.stepCombo.setEditable(True)
        self.stepCombo.setCurrentText(str(self.session.cfg.get("jog_step_mm", 1.0)))
        self.jogUpBtn = QtWidgets.QPushButton("Z +")
        self.jogDownBtn = QtWidgets.QPushButton("Z −")
        self.homeBtn = QtWidgets.QPushButton("Home"); self.homeBtn.setProperty("warn", True)
        self.saveBtn = QtWidgets.QPushButton("Save Z"); self.saveBtn.setProperty("primary", True)
        row.addWidget(QtWidgets.QLabel("Step (mm)")); row.addWidget(self.stepCombo)
        row.addWidget(self.jogUpBtn); row.addWidget(self.jogDownBtn)
        row.addStretch(1); row.addWidget(self.homeBtn); row.addWidget(self.saveBtn)
        g.layout().addLayout(row)

        row2 = QtWidgets.QHBoxLayout()
        self.savedLabel = self._value_label("Saved: —")
        self.addPadBtn = QtWidgets.QPushButton("Add Pad Here")
        self.clearPadsBtn = QtWidgets.QPushButton("Clear Pads"); self.clearPadsBtn.setProperty("danger", True)
        row2.addWidget(self.savedLabel, 1); row2.addWidget(self.addPadBtn); row2.addWidget(self.clearPadsBtn)
        g.layout().addLayout(row2)

        row3 = QtWidgets.QHBoxLayout()
        self.componentHeightEdit = QtWidgets.QLineEdit(); self.componentHeightEdit.setPlaceholderText("mm"); self.componentHeightEdit.setFixedWidth(80)
        btn_height = QtWidgets.QPushButton("Set Height")
        row3.addWidget(QtWidgets.QLabel("Component height")); row3.addWidget(self.componentHeightEdit)
        row3.addWidget(btn_height); row3.addStretch(1)
        g.layout().addLayout(row3)
        self.motionHint = self._hint_label()
        g.layout().addWidget(self.motionHint)

        self.jogUpBtn.clicked.connect(lambda: self._guard(self.session.jog, 1, self.stepCombo.currentText(), hint=self.motionHint))
        self.jogDownBtn.clicked.connect(lambda: self._guard(self.session.jog, -1, self.stepCombo.currentText(), hint=self.motionHint))
        self.homeBtn.clicked.connect(self.session.home)
        self.saveBtn.clicked.connect(self.session.save_position)
        self.addPadBtn.clicked.connect(self._add_pad_here)
        self.clearPadsBtn.clicked.connect(self._clear_pads)
        btn_height.clicked.connect(lambda: self._guard(self.session.set_component_height,
                                                       self.componentHeightEdit.text(), hint=self.motionHint))
        return g

    def _grp_auxiliary(self):
        g = self._card("Fans")
        row = QtWidgets.QHBoxLayout()
        self.fanBtns = {}
        for fan in ("machine", "tip"):
            b = QtWidgets.QPushButton(f"{fan.title()} fan"); b.setCheckable(True)
            b.clicked.connect(lambda _=False, f=fan: self.session.toggle_fan(f))
            self.fanBtns[fan] = b
            row.addWidget(b)
        row.addStretch(1)
        g.layout().addLayout(row)
        return g

    def _wire_break_banner(self):
        self.banner = QtWidgets.QFrame(); self.banner.setObjectName("wireBreakBanner")
        row = QtWidgets.QHBoxLayout(self.banner); row.setContentsMargins(12,8,12,8)
        self.bannerLabel = QtWidgets.QLabel("")
        self.bannerLabel.setWordWrap(True)
        btn = QtWidgets.QPushButton("Dismiss"); btn.setProperty("danger", True)
        row.addWidget(self.bannerLabel, 1); row.addWidget(btn)
        btn.clicked.connect(self.session.dismiss_wire_break)
        self.banner.setVisible(False)
        return self.banner

    def _grp_readout(self):
        g = self._card("Machine")
        grid = QtWidgets.QGridLayout(); grid.setHorizontalSpacing(14)
        self.zLabel = self._value_label("0.00 mm")
        self.tipLabel = self._value_label("—")
        self.fluxLabel = self._value_label("—")
        self.feedLabel = self._value_label("idle")
        for i, (title, lbl) in enumerate([("Z", self.zLabel), ("Tip", self.tipLabel),
                                          ("Flux", self.fluxLabel), ("Feeder", self.feedLabel)]):
            grid.addWidget(QtWidgets.QLabel(title), i // 2, (i % 2) * 2)
            grid.addWidget(lbl, i // 2, (i % 2) * 2 + 1)
        g.layout().addLayout(grid)
        return g

    def _grp_sequence(self):
        g = self._card("Sequence Monitor")
        self.stageLabel = self._value_label("Idle")
        self.padLabel = self._value_label("")
        top = QtWidgets.QHBoxLayout(); top.addWidget(self.stageLabel, 1); top.addWidget(self.padLabel)
        g.layout().addLayout(top)
        self.progress = QtWidgets.QProgressBar(); self.progress.setRange(0, 100)
        g.layout().addWidget(self.progress)
        self.seqHint = self._hint_label()
        g.layout().addWidget(self.seqHint)
        self.padsLabel = self._hint_label()
        g.layout().addWidget(self.padsLabel)

        ctl = QtWidgets.QHBoxLayout()
        self.startBtn = QtWidgets.QPushButton("Start"); self.startBtn.setProperty("primary", True)
        self.pauseBtn = QtWidgets.QPushButton("Pause"); self.pauseBtn.setProperty("warn", True)
        self.resumeBtn = QtWidgets.QPushButton("Resume")
        self.stopBtn = QtWidgets.QPushButton("Stop"); self.stopBtn.setProperty("danger", True)
        self.dismissBtn = QtWidgets.QPushButton("Dismiss Error")
        for b in (self.startBtn, self.pauseBtn, self.resumeBtn, self.stopBtn, self.dismissBtn):
            ctl.addWidget(b)
        g.layout().addLayout(ctl)

        run = QtWidgets.QFormLayout()
        self.clearanceSpin = QtWidgets.QDoubleSpinBox(); self.clearanceSpin.setRange(5.0, 10.0); self.clearanceSpin.setSingleStep(0.5)
        self.clearanceSpin.setValue(self.session.sequence.default_options.retract_clearance_mm)
        run.addRow("Retract clearance (mm)", self.clearanceSpin)
        g.layout().addLayout(run)

        # config form, locked while a run is active
        self.configBox = QtWidgets.QGroupBox("Configuration")
        form = QtWidgets.QFormLayout(self.configBox)
        cfg = self.session.sequence.config
        self.dwellSpin = QtWidgets.QSpinBox(); self.dwellSpin.setRange(0, 5000); self.dwellSpin.setSingleStep(100); self.dwellSpin.setValue(cfg.pre_heat_dwell_ms)
        self.coolingSpin = QtWidgets.QSpinBox(); self.coolingSpin.setRange(0, 10000); self.coolingSpin.setSingleStep(100); self.coolingSpin.setValue(cfg.cooling_ms)
        self.fluxFirstCheck = QtWidgets.QCheckBox("Flux before pre-heat"); self.fluxFirstCheck.setChecked(cfg.flux_before_pre_heat)
        self.multiPassCheck = QtWidgets.QCheckBox("Multiple passes for large pads"); self.multiPassCheck.setChecked(cfg.multiple_passes)
        self.thresholdSpin = QtWidgets.QDoubleSpinBox(); self.thresholdSpin.setRange(1.0, 100.0); self.thresholdSpin.setValue(cfg.large_pad_threshold_mm2)
        self.passesSpin = QtWidgets.QSpinBox(); self.passesSpin.setRange(1, 5); self.passesSpin.setValue(cfg.passes_per_large_pad)
        form.addRow("Pre-heat dwell (ms)", self.dwellSpin)
        form.addRow("Cooling (ms)", self.coolingSpin)
        form.addRow(self.fluxFirstCheck)
        form.addRow(self.multiPassCheck)
        form.addRow("Large pad threshold (mm²)", self.thresholdSpin)
        form.addRow("Passes per large pad", self.passesSpin)
        btn_apply = QtWidgets.QPushButton("Apply Configuration"); btn_apply.setProperty("primary", True)
        form.addRow(btn_apply)
        g.layout().addWidget(self.configBox)

        self.startBtn.clicked.connect(self._start_sequence)
        self.pauseBtn.clicked.connect(self.session.pause_sequence)
        self.resumeBtn.clicked.connect(self.session.resume_sequence)
        self.stopBtn.clicked.connect(self.session.stop_sequence)
        self.dismissBtn.clicked.connect(self.session.dismiss_sequence_error)
        btn_apply.clicked.connect(self._apply_sequence_config)
        return g

    # ---------- status & connection ----------
    @QtCore.Slot(list)
    def _fill_ports(self, items: List[str]):
        current = self.portCombo.currentText() or self.session.cfg.get("port", "")
        self.portCombo.clear(); self.portCombo.addItems(items)
        if current in items:
            self.portCombo.setCurrentText(current)

    def _set_status(self, text: str, color: str):
        self.status_label.setText(text)
        self.status_label.setStyleSheet(f"color:{status_color(color)};")

    def _show_link_state(self, state: str):
        labels = {"disconnected": "Disconnected", "connected-idle": "Hardware (Connected)",
                  "streaming": "Hardware (Active)"}
        self.link_label.setText(labels.get(state, state))
        self.link_label.setStyleSheet(f"color:{LINK_COLORS.get(state, TEXT_SUB)}; font-weight:600;")

    def _guard(self, fn, *args, hint: Optional[QtWidgets.QLabel] = None):
        # validation errors stay inline next to the control
        try:
            result = fn(*args)
        except SolderbotError as e:
            if hint is not None:
                hint.setText(str(e)); hint.setStyleSheet(f"color:{ERR_RED};")
            return None
        if hint is not None:
            hint.setText(""); hint.setStyleSheet("")
        return result

    def _refresh_busy(self):
        s = self.session
        motion_free = not s.dispatcher.is_busy("motion") and not s.telemetry.position.is_moving
        for b in (self.jogUpBtn, self.jogDownBtn, self.homeBtn, self.saveBtn):
            b.setEnabled(motion_free)
        self.tareBtn.setEnabled(not s.dispatcher.is_busy("spool:tare"))
        self.spoolResetBtn.setEnabled(not s.dispatcher.is_busy("spool:reset"))
        self.spoolConfigBtn.setEnabled(not s.dispatcher.is_busy("spool:config:set"))

    # ---------- pad metrics ----------
    def _on_shape_changed(self, shape: str):
        wanted = {key for key, _ in SHAPE_FIELDS.get(shape, [])}
        for key, (lbl, edit) in self.dimRows.items():
            lbl.setVisible(key in wanted); edit.setVisible(key in wanted)
        self._recompute_metrics()

    def _recompute_metrics(self, *_):
        shape = self.shapeCombo.currentText()
        data = {"shape": shape}
        for key, _ in SHAPE_FIELDS[shape]:
            data[key] = self.dimEdits[key].text().strip() or None
        if any(v is None for v in data.values()) or not self.heightEdit.text().strip():
            self.session.clear_pad_inputs()
            return
        try:
            geometry = geometry_from_dict(data)
        except SolderbotError as e:
            self.session.clear_pad_inputs()
            self.metricsHint.setText(str(e))
            return
        self.session.set_pad_inputs(geometry, self.heightEdit.text().strip())

    def _show_metrics(self, metrics):
        if metrics is None:
            for lbl in self.metricLabels.values():
                lbl.setText("—")
            self.metricsHint.setText(self.session.metrics_error or "")
            self.metricsHint.setStyleSheet(f"color:{ERR_RED};" if self.session.metrics_error else "")
            self.suggestLabel.setText("Suggested: —")
            self.applySuggestBtn.setEnabled(False)
            return
        self.metricsHint.setText(""); self.metricsHint.setStyleSheet("")
        m = metrics
        self.metricLabels["area"].setText(f"{m.area_mm2:.3f} mm²")
        self.metricLabels["category"].setText(m.category or "—")
        self.metricLabels["volume"].setText(f"{m.plan.volume_mm3:.3f} mm³")
        self.metricLabels["wire"].setText(f"{m.plan.length_mm:.2f} mm")
        self.metricLabels["steps"].setText(str(m.plan.step_count))
        temp = m.thermal.compensated_temp_c
        self.metricLabels["temp"].setText(f"{temp} °C" if temp is not None else "—")
        if temp is not None:
            self.suggestLabel.setText(f"Suggested: {temp} °C (+{m.thermal.compensation_c} °C, {m.category})")
        self.applySuggestBtn.setEnabled(temp is not None)

    # ---------- telemetry ----------
    def _on_telemetry(self, record: str):
        t = self.session.telemetry
        if record == "position":
            p = t.position
            self.zLabel.setText(f"{p.z:.2f} mm" + (" (moving)" if p.is_moving else ""))
            saved = f"{p.saved_movement_z:.2f} mm" if p.has_saved_movement and p.saved_movement_z is not None else "—"
            self.savedLabel.setText(f"Saved: {saved}")
            self._refresh_start()
            self._refresh_busy()
        elif record == "tip":
            cur = f"{t.tip.current:.1f}" if t.tip.current is not None else "—"
            self.tipLabel.setText(f"{cur} / {t.tip.target:.0f} °C")
            self.heaterBtn.setText("Heater Off" if t.tip.heater else "Heater On")
        elif record == "wire_feed":
            self.feedLabel.setText(t.wire_feed.status)
            self.feedStatus.setText(t.wire_feed.message)
        elif record == "spool":
            sp = t.spool
            self.spoolLabels["remaining"].setText(f"{sp.remaining_percentage:.0f} %")
            self.spoolLabels["length"].setText(f"{sp.remaining_length_mm:.0f} mm")
            self.spoolLabels["weight"].setText(f"{sp.net_weight_g:.1f} g" + (" (tared)" if sp.is_tared else ""))
            self.spoolLabels["diameter"].setText(f"{sp.wire_diameter_mm:.2f} mm")
            level = sp.alert_level
            colour = ERR_RED if level == "empty" else WARN_AMB if level == "low" else TEXT
            self.spoolLabels["remaining"].setStyleSheet(f"color:{colour};")
            self._recompute_metrics()
        elif record == "wire_break":
            wb = t.wire_break
            if wb.detected:
                when = datetime.datetime.fromtimestamp(wb.timestamp_ms / 1000).strftime("%H:%M:%S") if wb.timestamp_ms else ""
                self.bannerLabel.setText(f"Wire break detected {when}: {wb.message}")
            self.banner.setVisible(wb.detected)
        elif record == "fans":
            for fan, b in self.fanBtns.items():
                b.setChecked(getattr(t.fans, fan))

    def _sample_chart(self):
        t = self.session.telemetry
        self.chart.append(time.monotonic() - self._t0, t.position.z, t.tip.current, t.tip.target)
        self.chart.redraw()

    # ---------- sequence ----------
    def _add_pad_here(self):
        area = self.session.metrics.area_mm2 if self.session.metrics else None
        self.pads.append(PadPosition(z=self.session.telemetry.position.z, area=area))
        self._show_pads()

    def _clear_pads(self):
        self.pads = []
        self._show_pads()

    def _show_pads(self):
        if not self.pads:
            self.padsLabel.setText("No pads queued; the saved Z is used")
        else:
            parts = [f"#{i+1} z={p.z:.2f}" + (f" {p.area:.1f}mm²" if p.area else "") for i, p in enumerate(self.pads)]
            self.padsLabel.setText("Pads: " + ", ".join(parts))
        self._refresh_start()

    def _refresh_start(self):
        self.startBtn.setEnabled(self.session.can_start(len(self.pads)))

    def _start_sequence(self):
        self._guard(self.session.start_sequence, list(self.pads), None, self.clearanceSpin.value(), hint=self.seqHint)

    def _apply_sequence_config(self):
        config = SequenceConfig(
            pre_heat_dwell_ms=self.dwellSpin.value(),
            cooling_ms=self.coolingSpin.value(),
            flux_before_pre_heat=self.fluxFirstCheck.isChecked(),
            multiple_passes=self.multiPassCheck.isChecked(),
            large_pad_threshold_mm2=self.thresholdSpin.value(),
            passes_per_large_pad=self.passesSpin.value(),
        )
        try:
            self.session.apply_sequence_config(config)
        except SequenceBusy as e:
            self.seqHint.setText(str(e)); self.seqHint.setStyleSheet(f"color:{ERR_RED};")
            return
        except SolderbotError as e:
            logging.warning(f"Config not applied: {e}")
            self.seqHint.setText(str(e)); self.seqHint.setStyleSheet(f"color:{WARN_AMB};")
            return
        self.seqHint.setText("Configuration sent"); self.seqHint.setStyleSheet("")

    def _show_sequence(self, state):
        color = STAGE_COLORS.get(state.stage.value, PRIMARY)
        label = state.stage_label + (" (paused)" if state.is_paused else "")
        if state.stage == Stage.IDLE and state.last_completed_label:
            label = state.last_completed_label
        self.stageLabel.setText(label)
        self.stageLabel.setStyleSheet(f"color:{color};")
        if state.is_active:
            self.padLabel.setText(f"Pad {state.current_pad + 1}/{state.total_pads} · Pass {state.current_pass + 1}/{state.max_passes}")
        else:
            self.padLabel.setText(f"{state.total_wire_length_used_mm:.2f} mm wire used" if state.total_wire_length_used_mm else "")
        self.progress.setValue(state.progress_percent)
        if state.error_message:
            self.seqHint.setText(state.error_message)
            self.seqHint.setStyleSheet(f"color:{ERR_RED if state.stage == Stage.ERROR else TEXT_SUB};")

        idle = state.stage == Stage.IDLE
        self.pauseBtn.setEnabled(state.is_active and not state.is_paused)
        self.resumeBtn.setEnabled(state.is_paused)
        self.stopBtn.setEnabled(not idle)
        self.dismissBtn.setVisible(state.stage == Stage.ERROR)
        self.configBox.setEnabled(idle)
        self.clearanceSpin.setEnabled(idle)
        self._show_pads()
