"""
Controller for Rigol DG800 series function generators, used as the sine
stimulus source.
"""

from enum import Enum
from typing import Optional
import math

from .transport import Transport


class Output(Enum):
    CH1 = 1
    CH2 = 2


def coerce_phase(phase: float) -> float:
    """Wrap a phase in degrees into [0, 360)."""
    phase = phase % 360.0
    # A tiny negative input wraps to exactly 360.0 in floating point
    return 0.0 if phase >= 360.0 else phase


class SineGenerator:
    """Two-channel sine generator driven through a :class:`Transport`."""

    def __init__(self, transport: Transport):
        self.transport = transport

    def attach(self, address: str) -> bool:
        if not self.transport.attach(address):
            return False
        return self.setup_default()

    def detach(self) -> bool:
        return self.transport.detach()

    def setup_default(self) -> bool:
        """1 kHz, 1 Vpp sines on both outputs, CH2 leading by 90 degrees."""
        return (self.transport.write(':SOUR1:APPL:SIN 1000,1,0,0')
                and self.transport.write(':SOUR2:APPL:SIN 1000,1,0,90'))

    def set_channel(self, ch, freq: Optional[float] = None, vpp: Optional[float] = None,
                    offset: Optional[float] = None, phase: Optional[float] = None) -> bool:
        """
        Set several output parameters at once.

        Args:
            ch: Output channel (1 or 2).
            freq: Frequency in Hz.
            vpp: Amplitude in volts peak-to-peak.
            offset: DC offset in volts.
            phase: Phase in degrees, wrapped into [0, 360).

        Parameters left at None keep their current value.
        """
        ok = True
        if freq is not None:
            ok = ok and self.set_frequency(ch, freq)
        if vpp is not None:
            ok = ok and self.set_amplitude(ch, vpp)
        if offset is not None:
            ok = ok and self.set_offset(ch, offset)
        if phase is not None:
            ok = ok and self.set_phase(ch, phase)
        return ok

    def set_frequency(self, ch, freq: float) -> bool:
        if not math.isfinite(freq) or freq <= 0:
            return False
        return self.transport.write(f':SOUR{Output(ch).value}:FREQ {freq:.6f}')

    def set_amplitude(self, ch, vpp: float) -> bool:
        if not math.isfinite(vpp):
            return False
        return self.transport.write(f':SOUR{Output(ch).value}:VOLT {vpp:.6f}')

    def set_offset(self, ch, offset: float) -> bool:
        if not math.isfinite(offset):
            return False
        return self.transport.write(f':SOUR{Output(ch).value}:VOLT:OFFS {offset:.6f}')

    def set_phase(self, ch, phase: float) -> bool:
        if not math.isfinite(phase):
            return False
        return self.transport.write(f':SOUR{Output(ch).value}:PHAS {coerce_phase(phase):.6f}')

    def align_phase(self, ch) -> bool:
        """Re-synchronize the phase of both outputs."""
        return self.transport.write(f':SOUR{Output(ch).value}:PHAS:SYNC')

    def set_output(self, ch, enabled: bool) -> bool:
        return self.transport.write(f":OUTP{Output(ch).value} {'ON' if enabled else 'OFF'}")
