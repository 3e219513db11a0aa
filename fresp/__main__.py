#!/usr/bin/env python3
"""
Command-line interface for frequency response measurements.
"""

import argparse
import os
import re
import sys
from typing import Tuple

from .scope import Coupling, EdgeType
from .sweep import (
    DWELL_PRESETS,
    ChannelConfig,
    FreqResp,
    MeasurementConfig,
    Result,
    StimulusConfig,
    SweepConfig,
    SweepMode,
    TimeMetric,
    TriggerConfig,
    TriggerSource,
    VoltageMetric,
)
from .util import format_frequency, format_report, parse_si, planned_frequencies, report_row, write_csv

DEFAULT_OSCOPE = '192.168.0.197:5025'
DEFAULT_SIGGEN = '192.168.0.198:5555'

EXIT_SUCCESS = 0
EXIT_NO_SIGGEN = -1
EXIT_NO_OSCOPE = -2
EXIT_ERROR = -3
EXIT_FILE_WRITE = -4
EXIT_SYNTAX = -5
EXIT_SETUP = -6
EXIT_BLOCKED_EXE = -7


def parse_amplitude(value: str) -> Tuple[float, VoltageMetric]:
    """
    Parse a stimulus amplitude such as '1Vpp', '750mVpk' or '2V'.

    A plain voltage is taken as peak-to-peak.
    """
    match = re.match(r'^(.*?)(pp|pk)?$', value.strip(), re.IGNORECASE)
    metric = VoltageMetric.VPK if (match.group(2) or '').lower() == 'pk' else VoltageMetric.VPP
    return parse_si(match.group(1), unit='V'), metric


def parse_trigger_source(value: str):
    """'in' / 'out' follow the input/output channel, '1'-'4' pick a channel."""
    value = value.strip().lower()
    if value in ('in', 'out'):
        return TriggerSource(value)
    if value in ('1', '2', '3', '4'):
        return int(value)
    raise ValueError(f"Invalid trigger source '{value}', expected in, out or 1-4")


class ArgumentParser(argparse.ArgumentParser):
    """Raises ValueError on bad arguments instead of exiting with status 2."""

    def error(self, message):
        raise ValueError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog='fresp',
        description='''Frequency response (Bode plot) measurement tool.

Sweeps a Rigol DG800 sine generator across a frequency range and measures
the input and output amplitudes and phase on a Siglent SDS1000X-E
oscilloscope, autoscaling both channels at every frequency.''',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s
    Run with all defaults: 1KHz-100KHz, 10 points/decade, 1Vpp, live plot

  %(prog)s -s 10Hz -e 1MHz --log 20 -a 500mVpk
    Wider sweep with finer resolution and a 0.5V peak stimulus

  %(prog)s --lin 11 -s 1KHz -e 2KHz --meas-time delay
    Linear sweep reporting the delay between input and output edges

  %(prog)s --dump data.csv --headless
    Save to CSV without displaying plots

Instrument addresses default to the FRESP_OSCOPE and FRESP_SIGGEN
environment variables.
''')

    parser.add_argument('--scope', default=os.environ.get('FRESP_OSCOPE', DEFAULT_OSCOPE),
                        help='Oscilloscope address host:port (default: %(default)s)')
    parser.add_argument('--siggen', default=os.environ.get('FRESP_SIGGEN', DEFAULT_SIGGEN),
                        help='Signal generator address host:port (default: %(default)s)')

    parser.add_argument('-s', '--start', type=str, default='1KHz',
                        help='Start frequency (default: %(default)s)')
    parser.add_argument('-e', '--end', type=str, default='100KHz',
                        help='End frequency (default: %(default)s)')
    steps_group = parser.add_mutually_exclusive_group()
    steps_group.add_argument('--log', type=int, metavar='N', default=None,
                             help='Logarithmic sweep with N points per decade (default: 10)')
    steps_group.add_argument('--lin', type=int, metavar='N', default=None,
                             help='Linear sweep with N points in total')

    parser.add_argument('--stim-channel', type=int, default=1, choices=[1, 2],
                        help='Generator output channel (default: %(default)s)')
    parser.add_argument('-a', '--amplitude', type=str, default='1Vpp',
                        help='Stimulus amplitude, e.g. 1Vpp or 500mVpk (default: %(default)s)')
    parser.add_argument('--offset', type=str, default='0V',
                        help='Stimulus DC offset (default: %(default)s)')

    parser.add_argument('-i', '--input', type=int, default=1, choices=[1, 2, 3, 4],
                        help='Scope channel for the input signal (default: %(default)s)')
    parser.add_argument('-o', '--output', type=int, default=2, choices=[1, 2, 3, 4],
                        help='Scope channel for the output signal (default: %(default)s)')
    for name in ('input', 'output'):
        parser.add_argument(f'--{name}-coupling', choices=['ac', 'dc'], default='ac',
                            help=f'Coupling of the {name} channel (default: %(default)s)')
        parser.add_argument(f'--{name}-probe', type=int, choices=[1, 10], default=10,
                            help=f'Probe attenuation of the {name} channel (default: %(default)s)')
        parser.add_argument(f'--no-{name}-bwl', action='store_true',
                            help=f'Disable the 20MHz bandwidth limit on the {name} channel')

    parser.add_argument('--trig', type=str, default='in',
                        help='Trigger source: in, out or channel 1-4 (default: %(default)s)')
    parser.add_argument('--trig-edge', choices=['rising', 'falling'], default='rising',
                        help='Trigger edge (default: %(default)s)')
    parser.add_argument('--trig-coupling', choices=['ac', 'dc'], default='ac',
                        help='Trigger coupling (default: %(default)s)')
    parser.add_argument('--trig-level', type=str, default='0V',
                        help='Trigger level referred to a 1x probe (default: %(default)s)')

    parser.add_argument('--meas-voltage', choices=['vpp', 'vpk'], default='vpp',
                        help='Reported amplitude metric (default: %(default)s)')
    parser.add_argument('--meas-time', choices=['phase', 'delay'], default='phase',
                        help='Reported timing metric (default: %(default)s)')
    parser.add_argument('--dwell', choices=sorted(DWELL_PRESETS), default='mid',
                        help='Settling time preset after each frequency change (default: %(default)s)')

    parser.add_argument('-d', '--dump', type=str, metavar='FILE',
                        help='Save measurement data to CSV file')
    parser.add_argument('-H', '--headless', action='store_true',
                        help='Run without displaying plots')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Suppress informational messages')
    parser.add_argument('--debug', type=int, default=0, choices=[0, 1, 2],
                        help='Print instrument traffic to stderr (default: %(default)s)')
    return parser


def build_configs(args: argparse.Namespace) -> dict:
    """
    Turn parsed arguments into the sweep engine's configuration objects.

    Raises ValueError for values argparse cannot check by itself.
    """
    if args.input == args.output:
        raise ValueError("Input and output channels must be different")

    start_hz = parse_si(args.start, unit='Hz')
    end_hz = parse_si(args.end, unit='Hz')
    if end_hz <= start_hz:
        raise ValueError("Start frequency must be less than end frequency")

    if args.lin is not None:
        if args.lin < 2:
            raise ValueError("A linear sweep needs at least 2 points")
        sweep = SweepConfig(start_hz, end_hz, SweepMode.LIN, args.lin)
    else:
        points = 10 if args.log is None else args.log
        if points < 1:
            raise ValueError("A logarithmic sweep needs at least 1 point per decade")
        sweep = SweepConfig(start_hz, end_hz, SweepMode.LOG, points)

    amplitude, metric = parse_amplitude(args.amplitude)
    if amplitude <= 0:
        raise ValueError("Stimulus amplitude must be positive")
    stim = StimulusConfig(args.stim_channel, amplitude, metric, parse_si(args.offset, unit='V'))

    def channel(name: str) -> ChannelConfig:
        return ChannelConfig(channel=getattr(args, name),
                             coupling=Coupling(getattr(args, f'{name}_coupling').upper()),
                             attenuation=float(getattr(args, f'{name}_probe')),
                             bwlimit=not getattr(args, f'no_{name}_bwl'))

    trig = TriggerConfig(channel=parse_trigger_source(args.trig),
                         edge=EdgeType.RISING if args.trig_edge == 'rising' else EdgeType.FALLING,
                         coupling=Coupling(args.trig_coupling.upper()),
                         level=parse_si(args.trig_level, unit='V'))

    return dict(sweep=sweep, stim=stim, input_ch=channel('input'), output_ch=channel('output'),
                trig=trig, meas=MeasurementConfig(VoltageMetric(args.meas_voltage), TimeMetric(args.meas_time)),
                dwell=DWELL_PRESETS[args.dwell])


def main(argv=None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        configs = build_configs(args)
    except ValueError as e:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: {e}", file=sys.stderr)
        return EXIT_SYNTAX

    if args.dump and os.path.splitext(args.dump)[1].lower() == '.exe':
        print(f'Blocked writing to .exe file "{args.dump}"', file=sys.stderr)
        return EXIT_BLOCKED_EXE

    # Open the report up front so a bad path is caught before sweeping
    report = None
    if args.dump:
        try:
            report = open(args.dump, 'w', newline='')
        except OSError as e:
            print(f"Unable to write {args.dump}: {e}", file=sys.stderr)
            return EXIT_FILE_WRITE

    try:
        return run(args, configs, report)
    finally:
        if report is not None:
            report.close()


def run(args: argparse.Namespace, configs: dict, report=None) -> int:
    """Initialize the instruments, sweep, and write the report to ``report`` if given."""
    sweep = configs['sweep']
    time_metric = configs['meas'].time.value
    freqs = planned_frequencies(sweep.start, sweep.stop, sweep.mode is SweepMode.LOG, sweep.points)

    if not args.quiet:
        print(f"Measurement range: {format_frequency(sweep.start)} to {format_frequency(sweep.stop)}, "
              f"{len(freqs)} points", file=sys.stderr)
        print(f"Connecting to generator at {args.siggen} and oscilloscope at {args.scope}...", file=sys.stderr)

    fr = FreqResp(quiet=args.quiet, debug_level=args.debug)
    result = fr.init(args.scope, args.siggen, **configs)
    if result is not Result.SUCCESS:
        fr.close()
        print(f"Initialization failed: {result.name}", file=sys.stderr)
        match result:
            case Result.INIT_SINEGEN:
                return EXIT_NO_SIGGEN
            case Result.INIT_OSCILLOSCOPE:
                return EXIT_NO_OSCOPE
            case _:
                return EXIT_SETUP

    plot = None
    if not args.headless:
        from .plot import LivePlot
        plot = LivePlot(freqs, time_metric, log=sweep.mode is SweepMode.LOG)

    measured = []

    def on_record(record):
        measured.append(record)
        if not args.quiet:
            print('\t'.join(report_row(record)), flush=True)
        if plot is not None:
            plot.update(measured)

    try:
        if not args.quiet:
            print(format_report([], time_metric), end='')
        result = fr.run_full(callback=on_record)
        if result is not Result.SUCCESS:
            print(f"Sweep failed at {format_frequency(fr.frequency)}: {fr.last_error or result.name}",
                  file=sys.stderr)
    finally:
        fr.close()

    if report is not None:
        try:
            write_csv(report, measured, time_metric)
            report.flush()
        except OSError as e:
            print(f"Unable to write {args.dump}: {e}", file=sys.stderr)
            return EXIT_FILE_WRITE
        if not args.quiet:
            print(f"Data saved to {args.dump}", file=sys.stderr)

    if plot is not None:
        plot.show()

    return EXIT_SUCCESS if result is Result.SUCCESS else EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
