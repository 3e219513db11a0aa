"""
Controller for Siglent SDS1000X-E series oscilloscopes.

The controller speaks the scope's short-header SCPI dialect (``C1:VDIV 1V``,
``C1:PAVA? AMPL``, ...) through a :class:`~fresp.transport.Transport`. Vertical
and horizontal scales are chosen from discrete ladders of named settings, so
that autoscaling can move a channel up or down by whole steps.

Every setter returns a boolean and every measurement returns ``nan`` when the
instrument does not answer or answers with something unparseable. Nothing is
retried here.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
import math
import re

from .transport import Transport


VOLT_DIVISIONS = 8
TIME_DIVISIONS = 14
MAX_ADJUST = 3
MAX_SKEW = 100e-9

# Volts/division ladders: (volts/div, SCPI name), indexed by probe attenuation.
# Both ladders have the same length, so a step index means the same thing on either.
VDIV_LADDERS = {
    1.0: [
        (500e-6, '500UV'), (1e-3, '1MV'), (2e-3, '2MV'), (5e-3, '5MV'),
        (10e-3, '10MV'), (20e-3, '20MV'), (50e-3, '50MV'), (100e-3, '100MV'),
        (200e-3, '200MV'), (500e-3, '500MV'), (1.0, '1V'), (2.0, '2V'),
        (5.0, '5V'), (10.0, '10V'),
    ],
    10.0: [
        (5e-3, '5MV'), (10e-3, '10MV'), (20e-3, '20MV'), (50e-3, '50MV'),
        (100e-3, '100MV'), (200e-3, '200MV'), (500e-3, '500MV'), (1.0, '1V'),
        (2.0, '2V'), (5.0, '5V'), (10.0, '10V'), (20.0, '20V'),
        (50.0, '50V'), (100.0, '100V'),
    ],
}

# Range of the front end itself, i.e. volts/div referred to a 1x probe
VDIV_MIN = 500e-6
VDIV_MAX = 10.0

TDIV_LADDER = [
    (1e-9, '1NS'), (2e-9, '2NS'), (5e-9, '5NS'),
    (10e-9, '10NS'), (20e-9, '20NS'), (50e-9, '50NS'),
    (100e-9, '100NS'), (200e-9, '200NS'), (500e-9, '500NS'),
    (1e-6, '1US'), (2e-6, '2US'), (5e-6, '5US'),
    (10e-6, '10US'), (20e-6, '20US'), (50e-6, '50US'),
    (100e-6, '100US'), (200e-6, '200US'), (500e-6, '500US'),
    (1e-3, '1MS'), (2e-3, '2MS'), (5e-3, '5MS'),
    (10e-3, '10MS'), (20e-3, '20MS'), (50e-3, '50MS'),
    (100e-3, '100MS'), (200e-3, '200MS'), (500e-3, '500MS'),
    (1.0, '1S'), (2.0, '2S'), (5.0, '5S'),
    (10.0, '10S'), (20.0, '20S'), (50.0, '50S'),
    (100.0, '100S'),
]

_VDIV_BY_NAME = {name: volts for ladder in VDIV_LADDERS.values() for volts, name in ladder}
_TDIV_BY_NAME = {name: sec for sec, name in TDIV_LADDER}

# Numeric value followed by an optional unit, e.g. "C1:VDIV 1.00E+00V"
_NUMBER = r'([+\-]?[0-9.]+(?:E[+\-]?[0-9]+)?)'
_SCALE_RE = re.compile(r'^C[1-4]:[A-Z_]+ ' + _NUMBER + r'(?:V|A)?\s*$', re.IGNORECASE)
_ATTN_RE = re.compile(r'^C[1-4]:ATT[A-Z]* ([0-9.]+)\s*$', re.IGNORECASE)
_PAVA_RE = re.compile(r'^C[1-4]:PAVA [A-Z]+,(.+?)\s*$', re.IGNORECASE)
_MEAD_RE = re.compile(r'^C[1-4]-C[1-4]:MEAD [A-Z]+,(.+?)\s*$', re.IGNORECASE)
_VALUE_RE = re.compile(r'^' + _NUMBER + r'[A-Za-z%]*$', re.IGNORECASE)


class Channel(Enum):
    CH1 = 1
    CH2 = 2
    CH3 = 3
    CH4 = 4

    def __str__(self) -> str:
        return f'C{self.value}'


class Coupling(Enum):
    DC = 'DC'
    AC = 'AC'


class EdgeType(Enum):
    RISING = 'POS'
    FALLING = 'NEG'


class TriggerMode(Enum):
    STOP = 'STOP'
    AUTO = 'AUTO'
    NORM = 'NORM'
    SINGLE = 'SINGLE'


class MeasParam(Enum):
    """Single-channel amplitude/timing parameters (``PAVA?``)."""
    PKPK = 'PKPK'
    MAX = 'MAX'
    MIN = 'MIN'
    AMPL = 'AMPL'
    TOP = 'TOP'
    BASE = 'BASE'
    CMEAN = 'CMEAN'
    MEAN = 'MEAN'
    RMS = 'RMS'
    CRMS = 'CRMS'
    OVSN = 'OVSN'
    FPRE = 'FPRE'
    OVSP = 'OVSP'
    RPRE = 'RPRE'
    PER = 'PER'
    FREQ = 'FREQ'
    PWID = 'PWID'
    NWID = 'NWID'
    RISE = 'RISE'
    FALL = 'FALL'
    WID = 'WID'
    DUTY = 'DUTY'
    NDUTY = 'NDUTY'


class MeasDelParam(Enum):
    """
    Two-channel timing parameters (``MEAD?``).

    ``PHA`` is the phase difference in degrees. The edge variants are delays in
    seconds between the first (F) or last (L) rising (R) or falling (F) edge of
    the first channel and the matching edge of the second channel.
    """
    PHA = 'PHA'
    FRR = 'FRR'
    FRF = 'FRF'
    FFR = 'FFR'
    FFF = 'FFF'
    LRR = 'LRR'
    LRF = 'LRF'
    LFR = 'LFR'
    LFF = 'LFF'
    SKEW = 'SKEW'


@dataclass(frozen=True)
class ScaleValues:
    """Vertical scale of a channel as currently set on the instrument."""
    vdiv: float = 0.0
    offset: float = 0.0

    @property
    def pp(self) -> float:
        """Peak-to-peak voltage spanned by the full screen."""
        return self.vdiv * VOLT_DIVISIONS

    @property
    def max(self) -> float:
        return self.pp / 2.0 - self.offset

    @property
    def min(self) -> float:
        return -self.pp / 2.0 - self.offset


def _parse_value(text: str) -> float:
    """Parse a measurement value such as ``1.23E+00V``; ``****`` means no result."""
    m = _VALUE_RE.match(text.strip())
    return float(m.group(1)) if m else math.nan


def nearest_step(ladder, value: float) -> int:
    """Index of the ladder entry closest to ``value``."""
    return min(range(len(ladder)), key=lambda i: abs(value - ladder[i][0]))


class Scope:
    """
    Siglent oscilloscope controller.

    The controller owns its transport handle exclusively. Channels are
    identified by :class:`Channel`, or by plain integers 1-4.
    """

    def __init__(self, transport: Transport):
        self.transport = transport

    def attach(self, address: str) -> bool:
        """Connect to the scope and put it into a known default state."""
        if not self.transport.attach(address):
            return False
        return self.setup_default()

    def detach(self) -> bool:
        return self.transport.detach()

    def _write(self, cmd: str) -> bool:
        return self.transport.write(cmd)

    def _query(self, cmd: str) -> Optional[str]:
        ok, response = self.transport.query(cmd)
        return response if ok else None

    def setup_default(self) -> bool:
        for cmd in ('COMM_HEADER SHORT',
                    'ACQUIRE_WAY SAMPLING', 'MEMORY_SIZE 14M', 'SINXX_SAMPLE ON',
                    'XY_DISPLAY OFF', 'DTJN OFF', 'PESU OFF', 'MENU OFF',
                    'CRMS OFF', 'HSMD OFF', 'DCST OFF', 'DI:SWITCH OFF',
                    'MATH:TRACE OFF', 'MEASURE_CLEAR', 'REF_CLOSE'):
            if not self._write(cmd):
                return False

        ok = self.set_timebase_div('1MS', 0.0)
        for ch in Channel:
            ok = ok and self.set_channel(ch, enabled=False, vdiv='1V', offset=0.0,
                                         coupling=Coupling.DC, bwlimit=False,
                                         atten=10.0, invert=False)
            ok = ok and self.set_channel_unit(ch) and self.set_channel_skew(ch, 0.0)

        return (ok
                and self.set_edge_trigger(Channel.CH1, EdgeType.RISING, 0.0, Coupling.DC)
                and self.set_trigger_mode(TriggerMode.AUTO))

    # ---- Trigger ----

    def set_trigger_mode(self, mode: TriggerMode) -> bool:
        return self._write(f'TRMD {mode.value}')

    def set_edge_trigger(self, ch, edge: EdgeType, voltage: float,
                         coupling: Coupling, holdoff: bool = False,
                         t_holdoff: float = 0.0) -> bool:
        """
        Configure an edge trigger.

        Args:
            ch: Trigger source channel.
            edge: Slope to trigger on.
            voltage: Trigger level, referred to a 1x probe. The instrument
                expects the level at the probe tip, so it is divided by the
                channel's current attenuation before being sent.
            coupling: Trigger coupling.
            holdoff: Enable trigger holdoff.
            t_holdoff: Holdoff time in seconds (only used if ``holdoff``).
        """
        ch = Channel(ch)
        atten = self.read_channel_atten(ch)
        if not atten > 0.0:
            return False

        if holdoff:
            hold, hold_value = 'ON', f'{t_holdoff * 1e9:.6f}NS'
        else:
            hold, hold_value = 'OFF', '80NS'

        return (self._write(f'TRCP {coupling.value}')
                and self._write(f'{ch}:TRLV {voltage / atten:.6f}V')
                and self._write(f'TRSE EDGE,SR,{ch},HT,{hold},HV,{hold_value}')
                and self._write(f'{ch}:TRSL {edge.value}'))

    # ---- Vertical ----

    def set_channel(self, ch, enabled: bool = True, vdiv: Optional[str] = None,
                    offset: Optional[float] = None, coupling: Optional[Coupling] = None,
                    bwlimit: Optional[bool] = None, atten: Optional[float] = None,
                    invert: Optional[bool] = None) -> bool:
        """
        Set several channel parameters at once; parameters left at None are
        not changed. Attenuation goes first since it rescales volts/div.
        """
        ch = Channel(ch)
        ok = True
        if invert is not None:
            ok = ok and self.set_channel_invert(ch, invert)
        if atten is not None:
            ok = ok and self.set_channel_atten(ch, atten)
        if bwlimit is not None:
            ok = ok and self.set_channel_bwl(ch, bwlimit)
        if coupling is not None:
            ok = ok and self.set_channel_coupling(ch, coupling)
        if offset is not None:
            ok = ok and self.set_channel_offset(ch, offset)
        if vdiv is not None:
            ok = ok and self.set_channel_volts(ch, vdiv)
        return ok and self.set_channel_enable(ch, enabled)

    def set_channel_enable(self, ch, enabled: bool) -> bool:
        return self._write(f"{Channel(ch)}:TRACE {'ON' if enabled else 'OFF'}")

    def set_channel_volts(self, ch, name: str, offset: Optional[float] = None) -> bool:
        """Set volts/division by ladder name, e.g. ``'500MV'``."""
        name = name.upper()
        if name not in _VDIV_BY_NAME:
            raise ValueError(f"Unknown volts/division setting '{name}'")
        ch = Channel(ch)
        if not self._write(f'{ch}:VDIV {name}'):
            return False
        return offset is None or self.set_channel_offset(ch, offset)

    def set_channel_volts_ex(self, ch, vdiv: float, offset: Optional[float] = None) -> bool:
        """Set an exact volts/division value (at the probe tip)."""
        ch = Channel(ch)
        atten = self.read_channel_atten(ch)
        if not atten > 0.0 or not VDIV_MIN <= vdiv / atten <= VDIV_MAX:
            return False
        if not self._write(f'{ch}:VDIV {vdiv:.6f}'):
            return False
        return offset is None or self.set_channel_offset(ch, offset)

    def set_channel_offset(self, ch, offset: float) -> bool:
        if not math.isfinite(offset):
            return False
        return self._write(f'{Channel(ch)}:OFST {offset:.6f}V')

    def set_channel_bwl(self, ch, limit: bool) -> bool:
        """Enable (True) or disable (False) the 20 MHz bandwidth limit."""
        return self._write(f"{Channel(ch)}:BWL {'ON' if limit else 'OFF'}")

    def set_channel_invert(self, ch, invert: bool) -> bool:
        return self._write(f"{Channel(ch)}:INVS {'ON' if invert else 'OFF'}")

    def set_channel_atten(self, ch, atten: float) -> bool:
        """Set the probe attenuation; only 1x and 10x are supported."""
        if atten not in VDIV_LADDERS:
            return False
        return self._write(f'{Channel(ch)}:ATTN {atten:g}')

    def set_channel_coupling(self, ch, coupling: Coupling) -> bool:
        match coupling:
            case Coupling.DC:
                cpl = 'D1M'
            case Coupling.AC:
                cpl = 'A1M'
        return self._write(f'{Channel(ch)}:CPL {cpl}')

    def set_channel_unit(self, ch) -> bool:
        return self._write(f'{Channel(ch)}:UNIT V')

    def set_channel_skew(self, ch, skew: float) -> bool:
        """Set the channel deskew in seconds (at most 100 ns either way)."""
        if not abs(skew) <= MAX_SKEW:
            return False
        return self._write(f'{Channel(ch)}:SKEW {skew:.12f}')

    def read_channel_atten(self, ch) -> float:
        """Return the probe attenuation of a channel, or nan."""
        response = self._query(f'{Channel(ch)}:ATTN?')
        m = _ATTN_RE.match(response) if response is not None else None
        return float(m.group(1)) if m else math.nan

    def read_scale(self, ch) -> Optional[ScaleValues]:
        """Read back the current volts/division and offset of a channel."""
        ch = Channel(ch)
        values = []
        for cmd in (f'{ch}:VDIV?', f'{ch}:OFST?'):
            response = self._query(cmd)
            m = _SCALE_RE.match(response) if response is not None else None
            if not m:
                return None
            values.append(float(m.group(1)))
        return ScaleValues(vdiv=values[0], offset=values[1])

    def adjust_channel_volts(self, ch, adjust: int) -> Tuple[int, Optional[ScaleValues]]:
        """
        Move a channel's volts/division up or down the ladder.

        Args:
            ch: Channel to adjust.
            adjust: Number of ladder steps; positive is coarser (more V/div).
                Clamped to +/- ``MAX_ADJUST``.

        Returns:
            The number of steps actually applied (0 when already at the end
            of the ladder) and the scale read back from the instrument
            afterwards. The scale is None if the adjustment failed: the
            attenuation could not be read or is not 1x/10x, the new setting
            was not accepted, or the scale could not be read back.
        """
        adjust = max(-MAX_ADJUST, min(MAX_ADJUST, int(adjust)))
        scale = self.read_scale(ch)
        if adjust == 0 or scale is None:
            return 0, scale

        ladder = VDIV_LADDERS.get(self.read_channel_atten(ch))
        if ladder is None:
            return 0, None

        current = nearest_step(ladder, scale.vdiv)
        target = max(0, min(len(ladder) - 1, current + adjust))
        if target == current:
            return 0, scale

        if not self.set_channel_volts(ch, ladder[target][1]):
            return 0, None
        return target - current, self.read_scale(ch)

    # ---- Horizontal ----

    def set_timebase_div(self, name: str, delay: Optional[float] = None) -> bool:
        """Set time/division by ladder name, e.g. ``'500US'``."""
        name = name.upper()
        if name not in _TDIV_BY_NAME:
            raise ValueError(f"Unknown time/division setting '{name}'")
        if not self._write(f'TDIV {name}'):
            return False
        return delay is None or self.set_time_delay(delay)

    def set_timebase(self, t_capture: float, delay: Optional[float] = None) -> float:
        """
        Pick the fastest timebase whose screen spans at least ``t_capture``.

        Returns:
            The capture time actually achieved (time/div times the number of
            horizontal divisions), or nan on failure.
        """
        tdiv = t_capture / TIME_DIVISIONS
        sec, name = next(((s, n) for s, n in TDIV_LADDER if tdiv <= s), TDIV_LADDER[-1])
        if not self.set_timebase_div(name, delay):
            return math.nan
        return sec * TIME_DIVISIONS

    def set_time_delay(self, delay: float) -> bool:
        if not math.isfinite(delay):
            return False
        return self._write(f'TRDL {delay:.12f}')

    # ---- Measurements ----

    def measure(self, ch, param: MeasParam) -> float:
        """Read a single-channel parameter, e.g. ``MeasParam.AMPL``."""
        response = self._query(f'{Channel(ch)}:PAVA? {param.value}')
        m = _PAVA_RE.match(response) if response is not None else None
        return _parse_value(m.group(1)) if m else math.nan

    def measure_delay(self, ch1, ch2, param: MeasDelParam) -> float:
        """Read a timing parameter of ``ch2`` relative to ``ch1``."""
        response = self._query(f'{Channel(ch1)}-{Channel(ch2)}:MEAD? {param.value}')
        m = _MEAD_RE.match(response) if response is not None else None
        return _parse_value(m.group(1)) if m else math.nan
