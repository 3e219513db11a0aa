"""
Utility functions for parsing settings and reporting frequency response data.
"""

import csv
import re
from typing import Iterable, List

import numpy as np


def format_frequency(value: float) -> str:
    """Format frequency value with appropriate units (Hz/KHz/MHz)."""
    if value >= 1e6:
        return f'{value/1e6:.3f} MHz' if value < 100e6 else f'{value/1e6:.2f} MHz'
    elif value >= 1e3:
        return f'{value/1e3:.3f} KHz' if value < 100e3 else f'{value/1e3:.2f} KHz'
    else:
        return f'{value:.2f} Hz'


def parse_si(value: str, unit: str = 'Hz') -> float:
    """
    Parse a string with SI prefixes into a numeric value.

    Supports the prefixes u/µ (micro), m (milli), k/K (kilo), M (mega) and
    G (giga). The prefix is case-sensitive to distinguish m from M; the unit
    is optional and compared case-insensitively.

    Parameters
    ----------
    value : str
        String to parse, e.g., '10KHz', '-250mV', '1.5MHz'
    unit : str, optional
        Expected unit ('Hz', 'V', etc.). Default is 'Hz'.

    Returns
    -------
    float
        Numeric value in base units.

    Examples
    --------
    >>> parse_si('10KHz', unit='Hz')
    10000.0
    >>> parse_si('-250mV', unit='V')
    -0.25
    >>> parse_si('2.5', unit='V')
    2.5
    """
    original_value = value
    value = value.strip()

    match = re.match(r'^([+-]?[\d.]+(?:[eE][+-]?\d+)?)\s*([uµmkKMG]?)([a-zA-Z]+)?$', value)
    if not match:
        raise ValueError(f"Invalid format: {original_value}")

    try:
        number = float(match.group(1))
    except ValueError:
        raise ValueError(f"Invalid number in: {original_value}") from None
    prefix = match.group(2)
    found_unit = match.group(3)

    if found_unit and found_unit.upper() != unit.upper():
        raise ValueError(f"Expected unit '{unit}' but found '{found_unit}' in: {original_value}")

    multipliers = {
        '': 1,
        'u': 1e-6,
        'µ': 1e-6,
        'm': 1e-3,
        'k': 1e3,
        'K': 1e3,
        'M': 1e6,
        'G': 1e9,
    }

    return number * multipliers[prefix]


def planned_frequencies(start: float, stop: float, log: bool, points: int,
                        fudge: float = 1.001) -> np.ndarray:
    """
    Frequencies a sweep is going to visit, for point counts and plot limits.

    Parameters
    ----------
    start, stop : float
        Sweep range in Hz.
    log : bool
        Logarithmic (``points`` per decade) or linear (``points`` in total).
    fudge : float
        Relative tolerance on ``stop``, so that rounding does not drop the
        last point.
    """
    if log:
        n = int(np.floor(points * np.log10(stop * fudge / start))) + 1
        return start * 10.0 ** (np.arange(n) / points)
    return start + np.arange(points) * (stop - start) / (points - 1)


def report_header(time_metric: str) -> List[str]:
    return ['freq', 'input', 'output', 'gain', 'dB', time_metric]


def report_row(record) -> List[str]:
    """One measurement record as a row of formatted report fields."""
    return [f'{record.freq:.6g}', f'{record.mag_in:.6g}', f'{record.mag_out:.6g}',
            f'{record.gain:.6g}', f'{record.gain_db:.4f}', f'{record.time:.6g}']


def format_report(records: Iterable, time_metric: str) -> str:
    """Tab-separated table of measurement records, including the header line."""
    lines = ['\t'.join(report_header(time_metric))]
    lines += ['\t'.join(report_row(r)) for r in records]
    return '\n'.join(lines) + '\n'


def write_csv(f, records: Iterable, time_metric: str):
    """Write measurement records as CSV to an open text file."""
    writer = csv.writer(f)
    writer.writerow(report_header(time_metric))
    for record in records:
        writer.writerow(report_row(record))


def save_to_csv(filename: str, records: Iterable, time_metric: str):
    """Save measurement records to a CSV file."""
    with open(filename, 'w', newline='') as f:
        write_csv(f, records, time_metric)
