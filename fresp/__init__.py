"""
Frequency response (Bode plot) measurement with a Siglent oscilloscope and
a Rigol sine generator.

Submodules:
    fresp.sweep - Sweep engine and its configuration types
    fresp.scope - Siglent SDS1000X-E oscilloscope control
    fresp.siggen - Rigol DG800 function generator control
    fresp.transport - pyvisa socket transport shared by both instruments
    fresp.util - Parsing and report helpers
    fresp.plot - Live Bode plot
"""

from .sweep import (
    FreqResp,
    Result,
    SweepConfig,
    SweepMode,
    StimulusConfig,
    ChannelConfig,
    TriggerConfig,
    TriggerSource,
    MeasurementConfig,
    DwellConfig,
    MeasurementRecord,
    VoltageMetric,
    TimeMetric,
)

__version__ = "1.0.0"
__all__ = [
    "FreqResp",
    "Result",
    "SweepConfig",
    "SweepMode",
    "StimulusConfig",
    "ChannelConfig",
    "TriggerConfig",
    "TriggerSource",
    "MeasurementConfig",
    "DwellConfig",
    "MeasurementRecord",
    "VoltageMetric",
    "TimeMetric",
]
