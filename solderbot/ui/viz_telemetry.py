from __future__ import annotations
import numpy as np
from typing import Optional

from matplotlib.backends.backend_qtagg import FigureCanvasQTAgg as FigureCanvas
from matplotlib.figure import Figure

from solderbot.ui.styling import PRIMARY, ERR_RED, TEXT_SUB


class TelemetryChart(FigureCanvas):
    """Rolling history of Z position and tip temperature."""

    def __init__(self, parent=None, width=5, height=3.2, dpi=100, capacity: int = 600):
        self.fig = Figure(figsize=(width, height), dpi=dpi)
        self.ax_z = self.fig.add_subplot(211)
        self.ax_t = self.fig.add_subplot(212, sharex=self.ax_z)
        super(TelemetryChart, self).__init__(self.fig)
        self.setParent(parent)

        self.capacity = capacity
        self.t = np.full(capacity, np.nan)
        self.z = np.full(capacity, np.nan)
        self.temp = np.full(capacity, np.nan)
        self.count = 0

        self.line_z, = self.ax_z.plot([], [], color=PRIMARY, lw=1.5)
        self.line_t, = self.ax_t.plot([], [], color=ERR_RED, lw=1.5)
        self.line_target, = self.ax_t.plot([], [], color=TEXT_SUB, lw=1, ls="--")
        self.target: Optional[float] = None

        self.ax_z.set_ylabel("Z (mm)")
        self.ax_t.set_ylabel("Tip (°C)")
        self.ax_t.set_xlabel("t (s)")
        for ax in (self.ax_z, self.ax_t):
            ax.grid(True, alpha=0.3)
        self.fig.tight_layout()

    def append(self, t: float, z: float, temp: Optional[float], target: Optional[float] = None):
        if self.count < self.capacity:
            i = self.count
            self.count += 1
        else:
            # full: shift left by one
            self.t[:-1] = self.t[1:]; self.z[:-1] = self.z[1:]; self.temp[:-1] = self.temp[1:]
            i = self.capacity - 1
        self.t[i] = t
        self.z[i] = z
        self.temp[i] = np.nan if temp is None else temp
        self.target = target

    def clear(self):
        self.t[:] = np.nan; self.z[:] = np.nan; self.temp[:] = np.nan
        self.count = 0
        self.redraw()

    def redraw(self):
        n = self.count
        t = self.t[:n]
        self.line_z.set_data(t, self.z[:n])
        self.line_t.set_data(t, self.temp[:n])
        if n and self.target is not None:
            self.line_target.set_data([t[0], t[-1]], [self.target, self.target])
        else:
            self.line_target.set_data([], [])

        if n:
            lo, hi = float(t[0]), float(t[-1])
            self.ax_z.set_xlim(lo, hi if hi > lo else lo + 1.0)
            z = self.z[:n]
            self.ax_z.set_ylim(min(float(np.nanmin(z)) - 1.0, -1.0), 0.5)
            temps = self.temp[:n]
            if np.any(~np.isnan(temps)):
                t_lo = float(np.nanmin(temps)); t_hi = float(np.nanmax(temps))
                if self.target is not None:
                    t_hi = max(t_hi, self.target)
                self.ax_t.set_ylim(t_lo - 10.0, t_hi + 10.0)
        self.draw_idle()
