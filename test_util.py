"""
Tests for parsing and report helpers.
"""

import csv

import numpy as np
import pytest

from fresp.sweep import MeasurementRecord, TimeMetric
from fresp.util import format_frequency, format_report, parse_si, planned_frequencies, save_to_csv


@pytest.mark.parametrize('value, unit, expected', [
    ('10KHz', 'Hz', 10e3),
    ('10k', 'Hz', 10e3),
    ('1.5MHz', 'Hz', 1.5e6),
    ('100', 'Hz', 100.0),
    ('1e3Hz', 'Hz', 1e3),
    ('10mV', 'V', 0.01),
    ('-250mV', 'V', -0.25),
    ('+2V', 'V', 2.0),
    ('500uV', 'V', 500e-6),
    (' 1 V ', 'V', 1.0),
])
def test_parse_si(value, unit, expected):
    assert parse_si(value, unit=unit) == pytest.approx(expected)


@pytest.mark.parametrize('value, match', [
    ('abc', 'Invalid format'),
    ('', 'Invalid format'),
    ('.', 'Invalid number'),
    ('10V', "Expected unit 'Hz'"),
])
def test_parse_si_invalid(value, match):
    with pytest.raises(ValueError, match=match):
        parse_si(value, unit='Hz')


def test_format_frequency():
    assert format_frequency(50.0) == '50.00 Hz'
    assert format_frequency(1e3) == '1.000 KHz'
    assert format_frequency(250e3) == '250.00 KHz'
    assert format_frequency(2.5e6) == '2.500 MHz'


def test_planned_frequencies_log():
    freqs = planned_frequencies(1e3, 10e3, log=True, points=10)
    assert len(freqs) == 11
    assert freqs[-1] == pytest.approx(10e3)
    assert freqs[1:] / freqs[:-1] == pytest.approx(10 ** 0.1)

    # The stop frequency need not be on the grid
    assert len(planned_frequencies(1e3, 5e3, log=True, points=1)) == 1


def test_planned_frequencies_lin():
    assert list(planned_frequencies(1e3, 2e3, log=False, points=2)) == [1e3, 2e3]
    assert np.diff(planned_frequencies(1e3, 2e3, log=False, points=11)) == pytest.approx(100.0)


@pytest.fixture
def records():
    return [
        MeasurementRecord(1e3, 1.0, 1.0, 0.0, -1.5, TimeMetric.PHASE),
        MeasurementRecord(10e3, 1.0, 0.5, -6.0206, -45.0, TimeMetric.PHASE),
    ]


def test_format_report(records):
    lines = format_report(records, 'phase').splitlines()
    assert lines[0] == 'freq\tinput\toutput\tgain\tdB\tphase'
    assert lines[2].split('\t') == ['10000', '1', '0.5', '0.5', '-6.0206', '-45']


def test_save_to_csv(tmp_path, records):
    path = tmp_path / 'bode.csv'
    save_to_csv(str(path), records, 'delay')
    with open(path, newline='') as f:
        rows = list(csv.reader(f))
    assert rows[0] == ['freq', 'input', 'output', 'gain', 'dB', 'delay']
    assert len(rows) == 3
    assert float(rows[1][0]) == 1e3
