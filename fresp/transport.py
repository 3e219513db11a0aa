"""
Line-oriented socket transport for SCPI instruments.

Both instruments used by the frequency response analyzer speak plain SCPI
over a raw TCP socket (``host:port``). The transport wraps a pyvisa
``TCPIP0::host::port::SOCKET`` resource and reduces every transaction to a
boolean outcome, so that the controllers built on top of it never have to
deal with VISA exceptions.
"""

from typing import Optional, Protocol, Tuple
import pyvisa
import sys
import re


# Optional scheme, IPv4 or host name, port, optional trailing slash
_ADDRESS_RE = re.compile(r'^(?:[a-zA-Z][a-zA-Z0-9+.-]*://)?([A-Za-z0-9.-]+):(\d{1,5})/?$')


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split an instrument address into host and port.

    Accepts ``host:port`` with an optional ``scheme://`` prefix and an
    optional trailing slash, e.g. ``"tcp://192.168.0.197:5025/"``.

    Raises:
        ValueError: If the address is malformed or the port is out of range.
    """
    m = _ADDRESS_RE.match(address.strip())
    if not m:
        raise ValueError(f"Invalid instrument address '{address}', expected host:port")
    host, port = m.group(1), int(m.group(2))
    if not 0 < port < 65536:
        raise ValueError(f"Invalid port {port} in address '{address}'")
    return host, port


def visa_resource(address: str) -> str:
    """Return the VISA resource string for a ``host:port`` address."""
    host, port = parse_address(address)
    return f"TCPIP0::{host}::{port}::SOCKET"


class Transport(Protocol):
    """Capability handle consumed by the instrument controllers."""

    def attach(self, address: str) -> bool: ...

    def detach(self) -> bool: ...

    def write(self, command: str) -> bool: ...

    def query(self, command: str) -> Tuple[bool, str]: ...


class SocketTransport:
    """
    pyvisa-backed implementation of :class:`Transport`.

    The resource manager is the process-wide VISA subsystem handle. When one
    is passed in, its lifetime belongs to the caller and it may be shared by
    several transports. Otherwise the transport opens a private manager on
    :meth:`attach` and closes it again on :meth:`detach`.
    """

    def __init__(self, rm: Optional[pyvisa.ResourceManager] = None,
                 timeout_ms: int = 5000, debug_level: int = 0,
                 backend: str = '@py'):
        """
        Args:
            rm: Shared resource manager, or None to open one per attachment.
            timeout_ms: VISA I/O timeout applied to every transaction.
            debug_level: Debug verbosity level:
                0 = no debug output
                1 = print commands and responses to stderr
                2 = additionally print transport failures to stderr
            backend: pyvisa backend used when opening a private manager.
        """
        self.debug_level = debug_level
        self.timeout_ms = timeout_ms
        self._backend = backend
        self._rm = rm
        self._owns_rm = False
        self.inst = None
        self.address: Optional[str] = None

    @property
    def attached(self) -> bool:
        return self.inst is not None

    def attach(self, address: str) -> bool:
        """Open a session to ``address``; any previous session is closed first."""
        if self.attached:
            self.detach()

        try:
            resource = visa_resource(address)
        except ValueError as e:
            self._report(str(e))
            return False

        try:
            if self._rm is None:
                self._rm = pyvisa.ResourceManager(self._backend)
                self._owns_rm = True
            inst = self._rm.open_resource(resource)
            inst.read_termination = "\n"
            inst.write_termination = "\n"
            inst.timeout = self.timeout_ms
        except (pyvisa.errors.Error, OSError, ValueError) as e:
            self._report(f"Unable to open {resource}: {e}")
            self._release_rm()
            return False

        if self.debug_level >= 1:
            print(f"< Using VISA resource: {resource}", file=sys.stderr)
        self.inst = inst
        self.address = address
        return True

    def detach(self) -> bool:
        """Close the session. Detaching an unattached transport is a no-op."""
        if self.inst is not None:
            try:
                self.inst.close()
            except (pyvisa.errors.Error, OSError) as e:
                self._report(f"Error while closing {self.address}: {e}")
            self.inst = None
            self.address = None
        self._release_rm()
        return True

    def write(self, command: str) -> bool:
        """Send a single command line; pyvisa appends the terminator."""
        if self.inst is None:
            return False
        command = command.rstrip("\r\n")
        if self.debug_level >= 1:
            print(f"> {command}", file=sys.stderr)
        try:
            self.inst.write(command)
        except (pyvisa.errors.Error, OSError) as e:
            self._report(f"Write '{command}' failed: {e}")
            return False
        return True

    def query(self, command: str) -> Tuple[bool, str]:
        """Send a command and read back a single response line."""
        if not self.write(command):
            return False, ''
        try:
            response = self.inst.read()
        except (pyvisa.errors.Error, OSError) as e:
            self._report(f"Read after '{command.strip()}' failed: {e}")
            return False, ''
        if self.debug_level >= 1:
            print(f"< {response.strip()}", file=sys.stderr)
        return True, response

    def _release_rm(self) -> None:
        if self._owns_rm and self._rm is not None:
            self._rm.close()
            self._rm = None
            self._owns_rm = False

    def _report(self, message: str) -> None:
        if self.debug_level >= 2:
            print(f"  {message}", file=sys.stderr)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.detach()
