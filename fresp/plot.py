"""
Live Bode plot of a running frequency response sweep.
"""

from typing import Sequence

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.ticker import FuncFormatter


def _format_frequency_tick(value, pos):
    """Format frequency tick labels in Hz/KHz/MHz."""
    if value >= 1e6:
        return f'{value/1e6:.0f} MHz' if value >= 10e6 else f'{value/1e6:.1f} MHz'
    elif value >= 1e3:
        return f'{value/1e3:.0f} KHz' if value >= 10e3 else f'{value/1e3:.1f} KHz'
    else:
        return f'{value:.0f} Hz'


class LivePlot:
    """
    Two-panel Bode plot (gain, phase or delay) that is redrawn after every
    measurement.

    Parameters
    ----------
    freqs : array_like
        Planned sweep frequencies; fixes the x-axis range up front.
    time_metric : str
        'phase' (degrees) or 'delay' (seconds) for the lower panel.
    log : bool
        Logarithmic frequency axis.
    """

    def __init__(self, freqs: Sequence[float], time_metric: str = 'phase', log: bool = True):
        plt.ion()
        self.fig, (self.ax_mag, self.ax_time) = plt.subplots(2, 1, sharex=True, figsize=(8, 6))

        plot = 'semilogx' if log else 'plot'
        self.line_gain, = getattr(self.ax_mag, plot)([], [], marker='o', label="Measured")
        self.line_time, = getattr(self.ax_time, plot)([], [], marker='o', label="Measured")

        freqs = np.asarray(freqs, dtype=float)
        if len(freqs) > 1:
            f_min, f_max = freqs.min(), freqs.max()
            if log:
                margin = (np.log10(f_max) - np.log10(f_min)) * 0.05
                self.ax_mag.set_xlim(10**(np.log10(f_min) - margin), 10**(np.log10(f_max) + margin))
            else:
                margin = (f_max - f_min) * 0.05
                self.ax_mag.set_xlim(f_min - margin, f_max + margin)

        self.ax_mag.set_ylabel("Gain [dB]")
        self.ax_mag.grid(True, which="both", ls=":")

        self.ax_time.set_ylabel("Phase shift [deg]" if time_metric == 'phase' else "Delay [s]")
        self.ax_time.set_xlabel("Frequency")
        self.ax_time.grid(True, which="both", ls=":")
        self.ax_time.xaxis.set_major_formatter(FuncFormatter(_format_frequency_tick))

        self.fig.tight_layout()

    def update(self, records) -> None:
        """Redraw with all records measured so far."""
        self.line_gain.set_data([r.freq for r in records], [r.gain_db for r in records])
        self.line_time.set_data([r.freq for r in records], [r.time for r in records])

        # Rescale y-limits only (keep x-limits fixed)
        for ax in (self.ax_mag, self.ax_time):
            ax.relim()
            ax.autoscale_view(scalex=False, scaley=True)

        self.fig.canvas.draw()
        self.fig.canvas.flush_events()
        plt.pause(0.01)

    def show(self) -> None:
        """Block until the window is closed."""
        plt.ioff()
        plt.show()
