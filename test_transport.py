"""
Tests for the pyvisa socket transport, using a stand-in resource manager.
"""

import pytest
import pyvisa

from fresp import transport
from fresp.transport import SocketTransport, parse_address, visa_resource


def visa_timeout():
    return pyvisa.errors.VisaIOError(pyvisa.constants.StatusCode.error_timeout)


class FakeInstrument:
    def __init__(self, resource):
        self.resource = resource
        self.written = []
        self.responses = []
        self.closed = False
        self.fail_write = False

    def write(self, message):
        if self.fail_write:
            raise visa_timeout()
        self.written.append(message)

    def read(self):
        if not self.responses:
            raise visa_timeout()
        return self.responses.pop(0)

    def close(self):
        self.closed = True


class FakeResourceManager:
    def __init__(self, *args):
        self.opened = []
        self.closed = False
        self.fail_open = False

    def open_resource(self, resource):
        if self.fail_open:
            raise visa_timeout()
        inst = FakeInstrument(resource)
        self.opened.append(inst)
        return inst

    def close(self):
        self.closed = True


@pytest.fixture
def rm():
    return FakeResourceManager()


@pytest.fixture
def attached(rm):
    t = SocketTransport(rm)
    assert t.attach('192.168.0.197:5025')
    return t


class TestAddress:

    @pytest.mark.parametrize('address, expected', [
        ('192.168.0.197:5025', ('192.168.0.197', 5025)),
        ('tcp://192.168.0.197:5025', ('192.168.0.197', 5025)),
        ('192.168.0.198:5555/', ('192.168.0.198', 5555)),
        ('http://scope.lan:5025/', ('scope.lan', 5025)),
        (' 10.0.0.1:1 ', ('10.0.0.1', 1)),
    ])
    def test_valid(self, address, expected):
        assert parse_address(address) == expected

    @pytest.mark.parametrize('address', [
        '192.168.0.197',
        '192.168.0.197:',
        ':5025',
        '192.168.0.197:5025/path',
        '192.168.0.197:70000',
        '192.168.0.197:0',
        '',
    ])
    def test_invalid(self, address):
        with pytest.raises(ValueError, match="address"):
            parse_address(address)

    def test_visa_resource(self):
        assert visa_resource('tcp://192.168.0.198:5555/') == 'TCPIP0::192.168.0.198::5555::SOCKET'


class TestSocketTransport:

    def test_attach(self, attached, rm):
        inst = rm.opened[0]
        assert inst.resource == 'TCPIP0::192.168.0.197::5025::SOCKET'
        assert inst.read_termination == '\n'
        assert inst.write_termination == '\n'
        assert inst.timeout == 5000
        assert attached.attached
        assert attached.address == '192.168.0.197:5025'

    def test_attach_invalid_address(self, rm):
        t = SocketTransport(rm)
        assert not t.attach('no-port-here')
        assert rm.opened == []
        assert not t.attached

    def test_attach_unreachable(self, rm):
        rm.fail_open = True
        t = SocketTransport(rm)
        assert not t.attach('192.168.0.197:5025')
        assert not t.attached

    def test_reattach_closes_previous(self, attached, rm):
        assert attached.attach('192.168.0.198:5555')
        assert rm.opened[0].closed
        assert not rm.opened[1].closed

    def test_write_single_terminator(self, attached, rm):
        assert attached.write('C1:TRACE ON\n')
        assert attached.write('C1:TRACE OFF')
        assert rm.opened[0].written == ['C1:TRACE ON', 'C1:TRACE OFF']

    def test_write_failure(self, attached, rm):
        rm.opened[0].fail_write = True
        assert not attached.write('TRMD AUTO')

    def test_query(self, attached, rm):
        rm.opened[0].responses = ['C1:VDIV 1.00E+00V']
        assert attached.query('C1:VDIV?') == (True, 'C1:VDIV 1.00E+00V')
        assert rm.opened[0].written == ['C1:VDIV?']

    def test_query_timeout(self, attached):
        assert attached.query('C1:VDIV?') == (False, '')

    def test_not_attached(self):
        t = SocketTransport(FakeResourceManager())
        assert not t.write('TRMD AUTO')
        assert t.query('C1:VDIV?') == (False, '')
        assert t.detach()

    def test_detach_shared_manager(self, attached, rm):
        assert attached.detach()
        assert rm.opened[0].closed
        assert not rm.closed
        assert not attached.attached

    def test_private_manager(self, monkeypatch):
        managers = []

        def factory(*args):
            managers.append(FakeResourceManager(*args))
            return managers[-1]

        monkeypatch.setattr(transport.pyvisa, 'ResourceManager', factory)
        with SocketTransport() as t:
            assert t.attach('192.168.0.197:5025')
            assert not managers[0].closed
        assert managers[0].closed

    def test_private_manager_released_on_failure(self, monkeypatch):
        rm = FakeResourceManager()
        rm.fail_open = True
        monkeypatch.setattr(transport.pyvisa, 'ResourceManager', lambda *args: rm)
        assert not SocketTransport().attach('192.168.0.197:5025')
        assert rm.closed

    def test_debug_output(self, rm, capsys):
        t = SocketTransport(rm, debug_level=1)
        t.attach('192.168.0.197:5025')
        rm.opened[0].responses = ['C1:ATTN 10']
        t.query('C1:ATTN?')
        err = capsys.readouterr().err
        assert '> C1:ATTN?' in err
        assert '< C1:ATTN 10' in err
