"""
Frequency response sweep engine.

The engine drives a sine generator through a list of frequencies and, at
each frequency, lets the oscilloscope settle on a vertical scale for the
input and output channels before reading their amplitudes and the phase
(or delay) between them.

Typical use:

    fr = FreqResp()
    fr.init('192.168.0.197:5025', '192.168.0.198:5555',
            SweepConfig(1e3, 100e3), StimulusConfig(),
            ChannelConfig(1), ChannelConfig(2), TriggerConfig())
    fr.run_full()
    for rec in fr.records:
        print(rec.freq, rec.gain_db, rec.time)
    fr.close()

All operations report a :class:`Result` code instead of raising; negative
codes are failures.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Tuple, Union
import math
import sys
import time

import numpy as np

from .scope import Scope, Channel, Coupling, EdgeType, TriggerMode, MeasParam, MeasDelParam, ScaleValues
from .siggen import SineGenerator
from .transport import SocketTransport
from .util import format_frequency


class Result(IntEnum):
    SUCCESS = 0
    COMPLETE = 1
    NOT_INITIALIZED = -1
    ALREADY_INITIALIZED = -2
    INVALID_FREQUENCY = -3
    INVALID_STIM = -4
    INVALID_TRIG = -5
    INVALID_CHANNEL = -6
    ALREADY_COMPLETE = -7
    MEASUREMENT_FAILED = -8
    INIT_OSCILLOSCOPE = -10
    INIT_SINEGEN = -11


class SweepMode(Enum):
    LOG = 'log'
    LIN = 'lin'


class VoltageMetric(Enum):
    VPP = 'vpp'
    VPK = 'vpk'


class TimeMetric(Enum):
    PHASE = 'phase'
    DELAY = 'delay'


class TriggerSource(Enum):
    """Trigger on whichever scope channel carries the input or output signal."""
    INPUT = 'in'
    OUTPUT = 'out'


class SweepState(Enum):
    UNINITIALIZED = 'uninitialized'
    IDLE = 'idle'
    SWEEPING = 'sweeping'
    COMPLETED = 'completed'
    FAILED = 'failed'


class MeasurementError(RuntimeError):
    """An instrument transaction failed while measuring one frequency."""


@dataclass(frozen=True)
class SweepConfig:
    """
    Parameters
    ----------
    start, stop : float
        Sweep range in Hz, ``0 < start < stop``.
    mode : SweepMode
        Logarithmic or linear spacing.
    points : int
        Points per decade (log, >= 1) or total number of points (lin, >= 2).
    """
    start: float
    stop: float
    mode: SweepMode = SweepMode.LOG
    points: int = 10


@dataclass(frozen=True)
class StimulusConfig:
    channel: int = 1
    amplitude: float = 1.0
    metric: VoltageMetric = VoltageMetric.VPP
    offset: float = 0.0

    @property
    def vpp(self) -> float:
        """Amplitude normalized to volts peak-to-peak."""
        if self.metric is VoltageMetric.VPK:
            return 2.0 * self.amplitude
        return self.amplitude


@dataclass(frozen=True)
class ChannelConfig:
    channel: int
    coupling: Coupling = Coupling.AC
    attenuation: float = 10.0
    bwlimit: bool = True


@dataclass(frozen=True)
class TriggerConfig:
    channel: Union[int, TriggerSource] = TriggerSource.INPUT
    edge: EdgeType = EdgeType.RISING
    coupling: Coupling = Coupling.AC
    level: float = 0.0


@dataclass(frozen=True)
class MeasurementConfig:
    voltage: VoltageMetric = VoltageMetric.VPP
    time: TimeMetric = TimeMetric.PHASE


@dataclass(frozen=True)
class DwellConfig:
    """How long to let the circuit settle after retuning the stimulus."""
    stable_screens: float = 2.0
    min_dwell_ms: float = 500.0

    def settle_time(self, capture_time: float) -> float:
        """Seconds to wait given the scope's actual capture time."""
        return max(self.stable_screens * capture_time, self.min_dwell_ms / 1000.0)


DWELL_PRESETS = {
    'fast': DwellConfig(1.5, 250.0),
    'mid': DwellConfig(2.0, 500.0),
    'slow': DwellConfig(2.5, 1000.0),
}


@dataclass(frozen=True)
class MeasurementRecord:
    """
    One point of the frequency response.

    ``time`` is the phase of the output relative to the input in degrees
    when ``time_metric`` is PHASE, or the edge-to-edge delay in seconds when
    it is DELAY.
    """
    freq: float
    mag_in: float
    mag_out: float
    gain_db: float
    time: float
    time_metric: TimeMetric

    @property
    def gain(self) -> float:
        """Signed ratio ``mag_out / mag_in``; ``gain_db`` uses its magnitude."""
        return self.mag_out / self.mag_in


def gain_db(mag_in: float, mag_out: float) -> float:
    """Gain in dB, ``20*log10(|out/in|)``; a silent output gives -inf."""
    with np.errstate(divide='ignore'):
        return float(20.0 * np.log10(abs(mag_out / mag_in)))


def _validate(sweep: SweepConfig, stim: StimulusConfig, input_ch: ChannelConfig,
              output_ch: ChannelConfig, trig: TriggerConfig) -> Result:
    # Order matters: the first problem found is the one reported
    if (not math.isfinite(sweep.start) or not math.isfinite(sweep.stop)
            or sweep.start <= 0 or sweep.stop <= sweep.start):
        return Result.INVALID_FREQUENCY
    if sweep.points < (2 if sweep.mode is SweepMode.LIN else 1):
        return Result.INVALID_FREQUENCY

    if (not math.isfinite(stim.amplitude) or not math.isfinite(stim.offset)
            or stim.amplitude <= 0 or stim.channel not in (1, 2)):
        return Result.INVALID_STIM

    if not math.isfinite(trig.level):
        return Result.INVALID_TRIG
    if not isinstance(trig.channel, TriggerSource) and trig.channel not in (1, 2, 3, 4):
        return Result.INVALID_TRIG

    for cfg in (input_ch, output_ch):
        if cfg.channel not in (1, 2, 3, 4) or cfg.attenuation not in (1, 10):
            return Result.INVALID_CHANNEL
    if input_ch.channel == output_ch.channel:
        return Result.INVALID_CHANNEL

    return Result.SUCCESS


class FreqResp:
    """
    Sweep engine owning one scope and one sine generator.

    Lifecycle: :meth:`init` binds and configures both instruments, then
    :meth:`step` (one frequency at a time) or :meth:`run_full` measures, and
    :meth:`close` releases the instruments so that the engine can be
    initialized again.
    """

    # Autoscale targets, as fractions of the full-screen peak-to-peak window
    SEEK_MAX = 1.000
    SEEK_MID = 0.390
    SEEK_MIN = 0.200
    SEEK_MARGIN = 0.0275

    FREQ_FUDGE = 1.001      # tolerance on the stop frequency
    MEAS_CYCLES = 4.0       # signal periods per screen
    MAX_HUNTING = 3         # direction reversals before accepting a scale
    MAX_PASSES = 32

    AMPLITUDE_PARAM = MeasParam.AMPL

    def __init__(self, scope: Optional[Scope] = None,
                 stimulus: Optional[SineGenerator] = None,
                 quiet: bool = False, debug_level: int = 0,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Parameters
        ----------
        scope, stimulus : optional
            Instrument controllers. By default each gets its own socket
            transport.
        quiet : bool
            Suppress informational messages on stderr.
        debug_level : int
            Passed on to the default transports.
        sleep : callable
            Used for the settling delay; tests substitute a no-op.
        """
        self.scope = scope if scope is not None else Scope(SocketTransport(debug_level=debug_level))
        self.stimulus = stimulus if stimulus is not None else SineGenerator(SocketTransport(debug_level=debug_level))
        self.quiet = quiet
        self._sleep = sleep
        self._reset()

    def _reset(self) -> None:
        self._initialized = False
        self._completed = False
        self._failed = False
        self._records: List[MeasurementRecord] = []
        self._freq: Optional[float] = None
        self._scales: Dict[Channel, ScaleValues] = {}
        self.last_error: Optional[str] = None

    # ---- Read access ----

    @property
    def state(self) -> SweepState:
        if not self._initialized:
            return SweepState.UNINITIALIZED
        if self._completed:
            return SweepState.COMPLETED
        if self._failed:
            return SweepState.FAILED
        return SweepState.SWEEPING if self._records else SweepState.IDLE

    @property
    def frequency(self) -> Optional[float]:
        """Frequency the next step will measure at."""
        return self._freq

    @property
    def records(self) -> Tuple[MeasurementRecord, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(tuple(self._records))

    # ---- Operations ----

    def init(self, scope_address: str, siggen_address: str,
             sweep: SweepConfig, stim: StimulusConfig,
             input_ch: ChannelConfig, output_ch: ChannelConfig,
             trig: TriggerConfig,
             meas: MeasurementConfig = MeasurementConfig(),
             dwell: DwellConfig = DwellConfig()) -> Result:
        """Validate the configuration, bind both instruments and prepare the sweep."""
        if self._initialized:
            return Result.ALREADY_INITIALIZED

        result = _validate(sweep, stim, input_ch, output_ch, trig)
        if result is not Result.SUCCESS:
            return result

        match trig.channel:
            case TriggerSource.INPUT:
                trig_ch = input_ch.channel
            case TriggerSource.OUTPUT:
                trig_ch = output_ch.channel
            case _:
                trig_ch = trig.channel

        if not (self.stimulus.attach(siggen_address)
                and self.stimulus.set_channel(stim.channel, freq=sweep.start, vpp=stim.vpp,
                                              offset=stim.offset, phase=0.0)
                and self.stimulus.set_output(stim.channel, True)):
            self.stimulus.detach()
            return Result.INIT_SINEGEN

        self._ch_in = Channel(input_ch.channel)
        self._ch_out = Channel(output_ch.channel)
        if not (self.scope.attach(scope_address)
                and self._configure_scope(input_ch, output_ch, trig, Channel(trig_ch))):
            self.scope.detach()
            self.stimulus.detach()
            return Result.INIT_OSCILLOSCOPE

        self._sweep = sweep
        self._stim = stim
        self._meas = meas
        self._dwell = dwell
        self._edge_param = MeasDelParam.FRR if trig.edge is EdgeType.RISING else MeasDelParam.FFF
        self._factor = 0.5 if meas.voltage is VoltageMetric.VPK else 1.0
        self._initialized = True

        self._freq = sweep.start
        try:
            self._measure_at(self._freq)
        except MeasurementError as e:
            if not self.quiet:
                print(f"  Discarded first reading at {format_frequency(self._freq)}: {e}", file=sys.stderr)
        return Result.SUCCESS

    def _configure_scope(self, input_ch: ChannelConfig, output_ch: ChannelConfig,
                         trig: TriggerConfig, trig_ch: Channel) -> bool:
        for cfg in (input_ch, output_ch):
            if not (self.scope.set_channel(cfg.channel, enabled=True, offset=0.0,
                                           coupling=cfg.coupling, bwlimit=cfg.bwlimit,
                                           atten=cfg.attenuation)
                    and self.scope.set_channel_volts_ex(cfg.channel, 1.0)):
                return False

        if not (self.scope.set_trigger_mode(TriggerMode.AUTO)
                and self.scope.set_edge_trigger(trig_ch, trig.edge, trig.level, trig.coupling)):
            return False

        # Baseline scales, updated by every autoscale adjustment from here on
        for ch in (self._ch_in, self._ch_out):
            scale = self.scope.read_scale(ch)
            if scale is None:
                return False
            self._scales[ch] = scale
        return True

    def step(self) -> Tuple[Result, Optional[MeasurementRecord]]:
        """
        Measure at the current frequency and advance to the next one.

        Returns SUCCESS with the new record, or COMPLETE with the record of
        the last frequency. On MEASUREMENT_FAILED nothing is recorded and the
        frequency is left unchanged, so the step may be retried.
        """
        if not self._initialized:
            return Result.NOT_INITIALIZED, None
        if self._completed:
            return Result.ALREADY_COMPLETE, None

        try:
            record = self._measure_at(self._freq)
        except MeasurementError as e:
            self._failed = True
            self.last_error = str(e)
            return Result.MEASUREMENT_FAILED, None

        self._failed = False
        self.last_error = None
        self._records.append(record)
        self._advance()
        return (Result.COMPLETE if self._completed else Result.SUCCESS), record

    def _advance(self) -> None:
        sweep = self._sweep
        match sweep.mode:
            case SweepMode.LOG:
                self._freq *= 10.0 ** (1.0 / sweep.points)
            case SweepMode.LIN:
                self._freq += (sweep.stop - sweep.start) / (sweep.points - 1)
            case _:
                self._completed = True
                return
        if self._freq > sweep.stop * self.FREQ_FUDGE:
            self._completed = True

    def run_full(self, callback: Optional[Callable[[MeasurementRecord], None]] = None) -> Result:
        """
        Sweep from the start frequency until complete or a step fails.

        Earlier results are discarded first. ``callback`` is invoked with
        every new record.
        """
        if not self._initialized:
            return Result.NOT_INITIALIZED

        self._completed = False
        self._failed = False
        self._records.clear()
        self._freq = self._sweep.start

        while True:
            result, record = self.step()
            if record is not None and callback is not None:
                callback(record)
            if result is Result.COMPLETE:
                return Result.SUCCESS
            if result < 0:
                return result

    def close(self) -> Result:
        """Release both instruments and forget all sweep state."""
        self.stimulus.detach()
        self.scope.detach()
        self._reset()
        return Result.SUCCESS

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---- Measurement ----

    def _measure_at(self, freq: float) -> MeasurementRecord:
        t_capture = self.scope.set_timebase(self.MEAS_CYCLES / freq)
        if math.isnan(t_capture):
            raise MeasurementError(f"unable to set the timebase for {format_frequency(freq)}")
        if not self.stimulus.set_frequency(self._stim.channel, freq):
            raise MeasurementError(f"unable to set the stimulus to {format_frequency(freq)}")

        self._sleep(self._dwell.settle_time(t_capture))

        channels = (self._ch_in, self._ch_out)
        adjust = [0, 0]
        mags = [math.nan, math.nan]
        hunting = 0
        for _ in range(self.MAX_PASSES):
            last = list(adjust)
            for i, ch in enumerate(channels):
                mags[i], adjust[i] = self._measure_and_scale(ch)

            if any(a * b < 0 for a, b in zip(last, adjust)):
                hunting += 1
            if adjust == [0, 0] or hunting >= self.MAX_HUNTING:
                break

        if self._meas.time is TimeMetric.PHASE:
            t = self.scope.measure_delay(self._ch_in, self._ch_out, MeasDelParam.PHA)
        else:
            t = self.scope.measure_delay(self._ch_in, self._ch_out, self._edge_param)
        if math.isnan(t):
            raise MeasurementError(f"no {self._meas.time.value} reading at {format_frequency(freq)}")

        mag_in, mag_out = (self._factor * m for m in mags)
        if mag_in == 0:
            raise MeasurementError(f"no input signal at {format_frequency(freq)}")

        return MeasurementRecord(freq=freq, mag_in=mag_in, mag_out=mag_out,
                                 gain_db=gain_db(mag_in, mag_out), time=t,
                                 time_metric=self._meas.time)

    def _measure_and_scale(self, ch: Channel) -> Tuple[float, int]:
        """
        Read a channel's amplitude and request a new scale if the signal is
        too large or too small for the screen.

        Returns the amplitude reading and the number of ladder steps actually
        applied (0 means the channel is settled).
        """
        mag = self.scope.measure(ch, self.AMPLITUDE_PARAM)
        if self.AMPLITUDE_PARAM is MeasParam.PKPK:
            pkpk = mag
        else:
            pkpk = self.scope.measure(ch, MeasParam.PKPK)
        if math.isnan(mag) or math.isnan(pkpk):
            raise MeasurementError(f"no amplitude reading on {ch}")

        full_scale = self._scales[ch].pp
        if not full_scale > 0:
            raise MeasurementError(f"invalid vertical scale on {ch}")
        if pkpk > (self.SEEK_MAX - self.SEEK_MARGIN) * full_scale:
            request = 1
        elif pkpk < (self.SEEK_MIN - self.SEEK_MARGIN) * full_scale:
            request = -2
        elif pkpk < (self.SEEK_MID - self.SEEK_MARGIN) * full_scale:
            request = -1
        else:
            return mag, 0

        applied, scale = self.scope.adjust_channel_volts(ch, request)
        if scale is None:
            raise MeasurementError(f"unable to change the scale of {ch}")
        self._scales[ch] = scale
        if applied and not self.quiet:
            print(f'  {ch}: {pkpk:.4g}V is {100 * pkpk / full_scale:.1f}% of full scale, '
                  f'adjusting {applied:+d} step(s) to {scale.vdiv:.4g}V/div', file=sys.stderr)
        return mag, applied
