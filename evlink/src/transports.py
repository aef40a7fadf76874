"""
Physical byte transports to the diagnostic adapter.

Three interchangeable implementations of :class:`Transport`, picked from
the adapter address by :func:`make_transport`:

- ``/dev/rfcomm0``, ``/dev/ttyUSB0``, ``COM3`` -> :class:`SerialTransport`
  (pyserial, blocking calls pushed to a worker thread).
- ``tcp://192.168.0.10:35000`` -> :class:`TcpTransport` (Wi-Fi adapters,
  asyncio streams).
- ``AA:BB:CC:DD:EE:FF`` -> :class:`RfcommTransport` (Linux Bluetooth
  sockets).

Transports only move bytes.  Framing, prompts and timeouts per command
belong to the link driver.  Any OS-level failure surfaces as
:class:`LinkDisconnected`.

CHANGELOG:
- 2026-10-18: Add RFCOMM socket transport
- 2026-10-17: Initial creation (serial, TCP)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import socket
from typing import Protocol
from urllib.parse import urlparse

import serial

from evlink.src.errors import LinkDisconnected

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONNECT_TIMEOUT_S: float = 10.0
"""Deadline for establishing the physical connection."""

READ_CHUNK: int = 1024
"""Maximum bytes requested per read call."""

_MAC_RE = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")


class Transport(Protocol):
    """Byte pipe to the adapter."""

    description: str

    async def open(self) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def read(self, timeout: float) -> bytes:
        """Return available bytes, or ``b""`` if none arrive within *timeout*."""
        ...

    async def drain(self) -> None:
        """Discard any input already buffered."""
        ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Serial (pyserial)
# ---------------------------------------------------------------------------


class SerialTransport:
    """Serial-port transport backed by pyserial.

    Args:
        port: Device path (``/dev/rfcomm0``) or port name (``COM3``).
        baudrate: Line speed.
    """

    def __init__(self, port: str, *, baudrate: int = 38400) -> None:
        self._port = port
        self._baudrate = baudrate
        self._serial: serial.Serial | None = None
        self.description = f"serial:{port}@{baudrate}"

    async def open(self) -> None:
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial, self._port, self._baudrate, timeout=0
            )
        except (serial.SerialException, OSError) as exc:
            raise LinkDisconnected(f"cannot open {self._port}: {exc}") from exc

    def _require(self) -> serial.Serial:
        if self._serial is None or not self._serial.is_open:
            raise LinkDisconnected(f"{self._port} is not open")
        return self._serial

    async def write(self, data: bytes) -> None:
        ser = self._require()
        try:
            await asyncio.to_thread(self._write_blocking, ser, data)
        except (serial.SerialException, OSError) as exc:
            raise LinkDisconnected(f"write to {self._port} failed: {exc}") from exc

    @staticmethod
    def _write_blocking(ser: serial.Serial, data: bytes) -> None:
        ser.write(data)
        ser.flush()

    async def read(self, timeout: float) -> bytes:
        ser = self._require()
        try:
            return await asyncio.to_thread(self._read_blocking, ser, timeout)
        except (serial.SerialException, OSError) as exc:
            raise LinkDisconnected(f"read from {self._port} failed: {exc}") from exc

    @staticmethod
    def _read_blocking(ser: serial.Serial, timeout: float) -> bytes:
        ser.timeout = timeout
        first = ser.read(1)
        if not first:
            return b""
        waiting = ser.in_waiting
        return first + (ser.read(waiting) if waiting else b"")

    async def drain(self) -> None:
        ser = self._require()
        try:
            await asyncio.to_thread(ser.reset_input_buffer)
        except (serial.SerialException, OSError) as exc:
            raise LinkDisconnected(f"drain of {self._port} failed: {exc}") from exc

    async def close(self) -> None:
        if self._serial is not None:
            with contextlib.suppress(serial.SerialException, OSError):
                await asyncio.to_thread(self._serial.close)
            self._serial = None


# ---------------------------------------------------------------------------
# TCP (Wi-Fi adapters)
# ---------------------------------------------------------------------------


class TcpTransport:
    """TCP transport for Wi-Fi adapters.

    Args:
        host: Adapter IP address or hostname.
        port: Adapter TCP port (commonly 35000).
    """

    def __init__(self, host: str, port: int) -> None:
        self._host = host
        self._port = port
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self.description = f"tcp:{host}:{port}"

    async def open(self) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=CONNECT_TIMEOUT_S,
            )
        except (OSError, TimeoutError) as exc:
            raise LinkDisconnected(
                f"cannot connect to {self._host}:{self._port}: {exc}"
            ) from exc

    async def write(self, data: bytes) -> None:
        if self._writer is None:
            raise LinkDisconnected(f"{self.description} is not open")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as exc:
            raise LinkDisconnected(f"write to {self.description} failed: {exc}") from exc

    async def read(self, timeout: float) -> bytes:
        if self._reader is None:
            raise LinkDisconnected(f"{self.description} is not open")
        try:
            data = await asyncio.wait_for(self._reader.read(READ_CHUNK), timeout=timeout)
        except TimeoutError:
            return b""
        except OSError as exc:
            raise LinkDisconnected(f"read from {self.description} failed: {exc}") from exc
        if not data:
            raise LinkDisconnected(f"{self.description} closed by peer")
        return data

    async def drain(self) -> None:
        while await self.read(0.01):
            pass

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            with contextlib.suppress(OSError):
                await self._writer.wait_closed()
        self._reader = None
        self._writer = None


# ---------------------------------------------------------------------------
# Bluetooth RFCOMM (Linux sockets)
# ---------------------------------------------------------------------------


class RfcommTransport:
    """Bluetooth Classic RFCOMM socket transport.

    Args:
        mac: Adapter Bluetooth address.
        channel: RFCOMM channel (ELM327 clones use 1).
    """

    def __init__(self, mac: str, *, channel: int = 1) -> None:
        self._mac = mac
        self._channel = channel
        self._sock: socket.socket | None = None
        self.description = f"rfcomm:{mac}/{channel}"

    async def open(self) -> None:
        try:
            af_bluetooth = socket.AF_BLUETOOTH
            btproto_rfcomm = socket.BTPROTO_RFCOMM
        except AttributeError as exc:
            raise LinkDisconnected(
                "This Python build does not expose Bluetooth socket APIs "
                "(AF_BLUETOOTH/BTPROTO_RFCOMM)."
            ) from exc

        try:
            sock = socket.socket(af_bluetooth, socket.SOCK_STREAM, btproto_rfcomm)
        except OSError as exc:
            raise LinkDisconnected(f"Could not create RFCOMM socket: {exc}") from exc
        sock.setblocking(False)
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.sock_connect(sock, (self._mac, self._channel)),
                timeout=CONNECT_TIMEOUT_S,
            )
        except (OSError, TimeoutError) as exc:
            sock.close()
            raise LinkDisconnected(
                f"RFCOMM connect failed for {self._mac} on channel {self._channel}: {exc}"
            ) from exc
        self._sock = sock

    def _require(self) -> socket.socket:
        if self._sock is None:
            raise LinkDisconnected(f"{self.description} is not open")
        return self._sock

    async def write(self, data: bytes) -> None:
        sock = self._require()
        try:
            await asyncio.get_running_loop().sock_sendall(sock, data)
        except OSError as exc:
            raise LinkDisconnected(f"RFCOMM send failed: {exc}") from exc

    async def read(self, timeout: float) -> bytes:
        sock = self._require()
        try:
            data = await asyncio.wait_for(
                asyncio.get_running_loop().sock_recv(sock, READ_CHUNK), timeout=timeout
            )
        except TimeoutError:
            return b""
        except OSError as exc:
            raise LinkDisconnected(f"RFCOMM receive failed: {exc}") from exc
        if not data:
            raise LinkDisconnected(f"{self.description} closed by peer")
        return data

    async def drain(self) -> None:
        sock = self._require()
        while True:
            try:
                if not sock.recv(READ_CHUNK):
                    raise LinkDisconnected(f"{self.description} closed by peer")
            except BlockingIOError:
                return
            except OSError as exc:
                raise LinkDisconnected(f"RFCOMM receive failed: {exc}") from exc

    async def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def make_transport(
    address: str,
    *,
    baudrate: int = 38400,
    rfcomm_channel: int = 1,
) -> Transport:
    """Build (but do not open) the transport matching *address*.

    Args:
        address: Serial device, ``tcp://host:port`` URL or Bluetooth MAC.
        baudrate: Serial line speed.
        rfcomm_channel: RFCOMM channel for MAC addresses.

    Raises:
        ValueError: A ``tcp://`` address without host or port.
    """
    address = address.strip()
    if address.startswith("tcp://"):
        parsed = urlparse(address)
        if not parsed.hostname or not parsed.port:
            raise ValueError(f"tcp adapter address needs host and port: {address!r}")
        return TcpTransport(parsed.hostname, parsed.port)
    if _MAC_RE.match(address):
        return RfcommTransport(address.upper(), channel=rfcomm_channel)
    return SerialTransport(address, baudrate=baudrate)
