"""
Shared fixtures: in-memory stand-ins for the oscilloscope and the signal
generator, so the whole measurement chain can run without hardware.
"""

import re

import pytest

from fresp.scope import Scope, VDIV_LADDERS, VOLT_DIVISIONS
from fresp.scope import Coupling
from fresp.siggen import SineGenerator
from fresp.sweep import (
    FreqResp, SweepConfig, StimulusConfig, ChannelConfig, TriggerConfig,
    MeasurementConfig, DwellConfig,
)

SCOPE_ADDR = '192.168.0.197:5025'
SIGGEN_ADDR = '192.168.0.198:5555'

_VDIV_BY_NAME = {name: volts for ladder in VDIV_LADDERS.values() for volts, name in ladder}


class FakeTransport:
    """Records every command; subclasses decide how to react and answer."""

    def __init__(self, fail_attach=False):
        self.fail_attach = fail_attach
        self.attached = False
        self.attach_count = 0
        self.address = None
        self.log = []
        # Command prefixes the instrument refuses
        self.rejected = set()

    def attach(self, address):
        if self.fail_attach:
            return False
        self.attached = True
        self.attach_count += 1
        self.address = address
        return True

    def detach(self):
        self.attached = False
        return True

    def write(self, command):
        if not self.attached or any(command.startswith(p) for p in self.rejected):
            return False
        self.log.append(command)
        self.handle(command)
        return True

    def query(self, command):
        if not self.attached:
            return False, ''
        self.log.append(command)
        response = self.respond(command)
        if response is None:
            return False, ''
        return True, response + '\n'

    def handle(self, command):
        pass

    def respond(self, command):
        return None


class FakeSiglent(FakeTransport):
    """
    Answers the SDS1000X-E commands used by the scope controller.

    Each channel sees a sine of ``signal[ch]`` volts peak-to-peak. Amplitude
    readings clip at the top of the screen, like on the real instrument.
    ``pkpk_sequence[ch]`` scripts PKPK readings that are returned first.
    Parameters listed in ``failing`` are answered with ``****``.
    """

    def __init__(self, fail_attach=False):
        super().__init__(fail_attach)
        self.vdiv = {ch: 1.0 for ch in range(1, 5)}
        self.offset = {ch: 0.0 for ch in range(1, 5)}
        self.atten = {ch: 10.0 for ch in range(1, 5)}
        self.signal = {1: 1.0, 2: 1.0, 3: 0.0, 4: 0.0}
        self.pkpk_sequence = {ch: [] for ch in range(1, 5)}
        self.phase = -45.0
        self.delay = 1.25e-4
        self.failing = set()
        self.ignore_vdiv = False

    def reading(self, ch):
        return min(self.signal[ch], self.vdiv[ch] * VOLT_DIVISIONS)

    def handle(self, command):
        if m := re.match(r'^C([1-4]):VDIV (\S+)$', command):
            if not self.ignore_vdiv:
                value = m.group(2)
                self.vdiv[int(m.group(1))] = _VDIV_BY_NAME.get(value) or float(value)
        elif m := re.match(r'^C([1-4]):OFST (\S+)V$', command):
            self.offset[int(m.group(1))] = float(m.group(2))
        elif m := re.match(r'^C([1-4]):ATTN (\S+)$', command):
            self.atten[int(m.group(1))] = float(m.group(2))

    def respond(self, command):
        if m := re.match(r'^C([1-4]):(VDIV|OFST|ATTN)\?$', command):
            ch = int(m.group(1))
            match m.group(2):
                case 'VDIV':
                    return f'C{ch}:VDIV {self.vdiv[ch]:.2E}V'
                case 'OFST':
                    return f'C{ch}:OFST {self.offset[ch]:.2E}V'
                case 'ATTN':
                    return f'C{ch}:ATTN {self.atten[ch]:g}'

        if m := re.match(r'^C([1-4]):PAVA\? (\w+)$', command):
            ch, param = int(m.group(1)), m.group(2)
            if param in self.failing:
                return f'C{ch}:PAVA {param},****'
            if param == 'PKPK' and self.pkpk_sequence[ch]:
                value = self.pkpk_sequence[ch].pop(0)
            else:
                value = self.reading(ch)
            return f'C{ch}:PAVA {param},{value:.6E}V'

        if m := re.match(r'^C([1-4])-C([1-4]):MEAD\? (\w+)$', command):
            param = m.group(3)
            prefix = f'C{m.group(1)}-C{m.group(2)}:MEAD {param},'
            if param in self.failing:
                return prefix + '****'
            if param == 'PHA':
                return prefix + f'{self.phase:.4E}degree'
            return prefix + f'{self.delay:.4E}S'

        return None


class FakeRigol(FakeTransport):
    """Write-only DG800 stand-in that tracks frequency and output state."""

    def __init__(self, fail_attach=False):
        super().__init__(fail_attach)
        self.freq = {}
        self.output = {}

    def handle(self, command):
        if m := re.match(r'^:SOUR([12]):FREQ (\S+)$', command):
            self.freq[int(m.group(1))] = float(m.group(2))
        elif m := re.match(r'^:OUTP([12]) (ON|OFF)$', command):
            self.output[int(m.group(1))] = m.group(2) == 'ON'


@pytest.fixture
def scope_io():
    return FakeSiglent()


@pytest.fixture
def siggen_io():
    return FakeRigol()


@pytest.fixture
def sleeps():
    """Settling delays requested by the engine, instead of actually sleeping."""
    return []


@pytest.fixture
def make_engine(scope_io, siggen_io, sleeps):
    """Factory for engines bound to the fake instruments."""
    engines = []

    def factory(scope_io=scope_io, siggen_io=siggen_io, quiet=True):
        fr = FreqResp(Scope(scope_io), SineGenerator(siggen_io), quiet=quiet, sleep=sleeps.append)
        engines.append(fr)
        return fr

    yield factory
    for fr in engines:
        fr.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def configs():
    """Default configuration: 1-10KHz log sweep, CH1 in, CH2 out, 1Vpp stimulus."""
    return dict(
        sweep=SweepConfig(1e3, 10e3),
        stim=StimulusConfig(),
        input_ch=ChannelConfig(1, Coupling.AC),
        output_ch=ChannelConfig(2, Coupling.AC),
        trig=TriggerConfig(),
        meas=MeasurementConfig(),
        dwell=DwellConfig(),
    )


@pytest.fixture
def start(engine, configs):
    """Initialize the default engine, with configuration overrides."""
    def init(**overrides):
        return engine.init(SCOPE_ADDR, SIGGEN_ADDR, **{**configs, **overrides})
    return init


@pytest.fixture
def dead_scope_io():
    """An oscilloscope that cannot be reached."""
    return FakeSiglent(fail_attach=True)


@pytest.fixture
def dead_siggen_io():
    """A signal generator that cannot be reached."""
    return FakeRigol(fail_attach=True)
