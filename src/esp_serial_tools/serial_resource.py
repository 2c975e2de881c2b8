"""Exclusive serial resource with async poll-based reads and reset pulses.

Wraps one pyserial handle for the lifetime of a session:

1. **Request** a physical port from a ``PortRequester`` (configured path or an
   interactive prompt), then **open** it with an exclusive lock.
2. **Write** bytes in call order, flushing the OS transmit buffer each time.
3. **Raw-read** chunks as an async iterator.  The handle is non-blocking; the
   iterator polls ``in_waiting`` and sleeps on the event loop between empty
   polls, so it never blocks other tasks.
4. **Pulse** DTR/RTS to hardware-reset the target.
5. **Close** best-effort and let callers wait for the reader lock to drop.

Cross-platform: works on both Windows (COMx) and Linux
(/dev/ttyUSB*, /dev/ttyACM*).
"""

from __future__ import annotations

import asyncio
import logging
import platform
import time
from typing import Any, AsyncIterator, Callable, List, Optional

import serial
import serial.tools.list_ports
from typeguard import typechecked

from . import (
    RESET_PULSE_MS,
    SERIAL_BAUD_RATE,
    SERIAL_POLL_INTERVAL_S,
    SERIAL_READ_TIMEOUT,
    SERIAL_WRITE_TIMEOUT,
    UNLOCK_TIMEOUT_MS,
)
from .exceptions import (
    NoPortSelectedError,
    PortNotOpenError,
    PortUnavailableError,
    ResourceReleaseError,
    SerialCommunicationError,
    SerialConnectionError,
)

logger = logging.getLogger("esp_serial_tools.serial_resource")

_IS_WINDOWS = platform.system() == "Windows"


def _write_all(
    ser: Any,
    data: bytes,
    port_name: str,
    context: str = "",
) -> int:
    """Write *all* bytes to the serial port and flush the OS transmit buffer.

    Does **not** catch exceptions — lets ``serial.SerialTimeoutException``,
    ``serial.SerialException``, and ``OSError`` propagate to the caller.

    Raises:
        SerialCommunicationError: If a short write is detected (fewer bytes
            written than requested).
    """
    n = ser.write(data)
    if n is not None and n != len(data):
        raise SerialCommunicationError(
            f"[{context}] Short write on {port_name}: "
            f"wrote {n}/{len(data)} bytes. "
            f"The kernel transmit buffer is probably full."
        )
    ser.flush()
    logger.debug(
        "[SERIAL-WRITE-ALL] [%s] Wrote %d bytes to %s",
        context, len(data), port_name,
    )
    return len(data)


def list_available_ports() -> List[str]:
    """Return a list of serial port names visible to the operating system."""
    descriptions = []
    for p in serial.tools.list_ports.comports():
        descriptions.append(f"{p.device} — {p.description}")
        logger.debug("[SERIAL-LIST] Found port: %s (%s)", p.device, p.description)
    return descriptions


def _platform_hint() -> str:
    """Return a platform-specific troubleshooting hint."""
    available = ", ".join(p.device for p in serial.tools.list_ports.comports()) or "none"
    if _IS_WINDOWS:
        return (
            "On Windows: verify the COM port number in Device Manager "
            "(Ports → COM & LPT). Ensure no other application (Arduino IDE, "
            "PuTTY, a browser tab) has the port open. "
            f"Available ports: {available}."
        )
    return (
        "On Linux: verify the device path exists (ls /dev/ttyUSB* /dev/ttyACM*). "
        "Ensure your user is in the 'dialout' group "
        "(sudo usermod -aG dialout $USER) and that no other process "
        "(minicom, screen, idf.py monitor) has the port open. "
        f"Available ports: {available}."
    )


# ---------------------------------------------------------------------------
# Port selection
# ---------------------------------------------------------------------------


class PortRequester:
    """Chooses which physical port a session should open.

    ``request_port`` returns the device path, or ``None`` when the selection
    was dismissed.
    """

    async def request_port(self) -> Optional[str]:
        raise NotImplementedError


class StaticPortRequester(PortRequester):
    """Always answers with a configured device path."""

    def __init__(self, port: str) -> None:
        self.port = port

    async def request_port(self) -> Optional[str]:
        return self.port or None


class InteractivePortRequester(PortRequester):
    """Lists visible ports and asks a human to pick one on stdin.

    The blocking ``input`` call runs in the default executor so the event
    loop keeps servicing other tasks while the prompt is open.
    """

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output_func: Callable[[str], None] = print,
    ) -> None:
        self._input = input_func
        self._output = output_func

    async def request_port(self) -> Optional[str]:
        ports = serial.tools.list_ports.comports()
        if not ports:
            logger.warning("[PORT-REQUEST] No serial ports visible to the operating system")
            return None

        self._output("Available serial ports:")
        for index, p in enumerate(ports):
            self._output(f"  [{index}] {p.device} — {p.description}")

        loop = asyncio.get_running_loop()
        try:
            answer = await loop.run_in_executor(
                None, self._input, "Select port (index or path, empty to cancel): ",
            )
        except EOFError:
            return None

        answer = answer.strip()
        if not answer:
            return None
        if answer.isdigit() and int(answer) < len(ports):
            return ports[int(answer)].device
        return answer


# ---------------------------------------------------------------------------
# Serial resource
# ---------------------------------------------------------------------------


@typechecked
class SerialResource:
    """Exclusive owner of one open serial handle.

    Example::

        resource = SerialResource(StaticPortRequester("/dev/ttyUSB0"))
        await resource.request_and_open(115200)
        await resource.write(b"help\\r\\n")
        async for chunk in resource.raw_read():
            print(chunk)
    """

    def __init__(
        self,
        requester: Optional[PortRequester] = None,
        serial_factory: Callable[..., Any] = serial.Serial,
        write_timeout: Optional[float] = SERIAL_WRITE_TIMEOUT,
        poll_interval_s: float = SERIAL_POLL_INTERVAL_S,
        reset_pulse_ms: int = RESET_PULSE_MS,
    ) -> None:
        """Initialize an unopened serial resource.

        Args:
            requester: Supplies the port to open.  Defaults to an interactive
                stdin prompt.
            serial_factory: Callable that builds the pyserial handle.  Takes
                the same keyword arguments as ``serial.Serial``.
            write_timeout: Write timeout in seconds.  ``None`` blocks forever.
            poll_interval_s: Sleep between empty polls in ``raw_read``.
            reset_pulse_ms: How long RTS is held asserted by ``pulse_reset``.
        """
        self.requester = requester if requester is not None else InteractivePortRequester()
        self.serial_factory = serial_factory
        self.write_timeout = write_timeout
        self.poll_interval_s = poll_interval_s
        self.reset_pulse_ms = reset_pulse_ms
        self.port: Optional[str] = None
        self.baud_rate = SERIAL_BAUD_RATE
        self._serial: Optional[Any] = None
        self._closing = False
        self._readers = 0

    # ---- State ----

    @property
    def is_open(self) -> bool:
        return self._serial is not None and bool(self._serial.is_open)

    @property
    def handle(self) -> Any:
        """Return the underlying pyserial handle.

        Raises:
            PortNotOpenError: If the port is not open.
        """
        return self._require_open("access handle")

    def is_unlocked(self) -> bool:
        """``True`` once the handle is closed and no reader holds the lock."""
        return self._readers == 0 and not self.is_open

    def _require_open(self, operation: str) -> Any:
        if self._serial is None or not self._serial.is_open:
            raise PortNotOpenError(
                f"Cannot {operation} on serial port {self.port or '(none)'}: "
                f"port is not open. Call request_and_open() first."
            )
        return self._serial

    # ---- Lifecycle ----

    async def request_and_open(self, baud_rate: int = SERIAL_BAUD_RATE) -> str:
        """Ask the requester for a port and open it at ``baud_rate``.

        Returns:
            The opened device path.

        Raises:
            NoPortSelectedError: If the requester returned no port.
            PortUnavailableError: If the port cannot be opened.
            SerialConnectionError: If ``baud_rate`` is not positive.
        """
        if self.is_open:
            logger.debug("[SERIAL-OPEN] Port %s is already open — reusing", self.port)
            return self.port or ""

        if baud_rate <= 0:
            raise SerialConnectionError(
                f"Invalid baud rate {baud_rate!r}. Baud rate must be a positive "
                f"integer. Common values: 115200, 460800, 921600."
            )

        port = await self.requester.request_port()
        if not port:
            logger.warning("[SERIAL-OPEN] Port selection was dismissed")
            raise NoPortSelectedError("No serial port selected")

        logger.info("[SERIAL-OPEN] Opening %s at %d baud ...", port, baud_rate)
        try:
            handle = self.serial_factory(
                port=port,
                baudrate=baud_rate,
                timeout=SERIAL_READ_TIMEOUT,
                write_timeout=self.write_timeout,
                exclusive=True,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            msg = f"Failed to open serial port {port} at {baud_rate} baud: {exc}. {_platform_hint()}"
            logger.error("[SERIAL-OPEN] FAILED — %s", msg)
            raise PortUnavailableError(msg) from exc

        self._serial = handle
        self._closing = False
        self.port = port
        self.baud_rate = baud_rate
        logger.info("[SERIAL-OPEN] Successfully opened %s", port)
        return port

    def close(self) -> None:
        """Close the serial port if open.

        Active readers observe the close on their next poll and release the
        reader lock.  Calling this on a closed resource is a no-op.

        Raises:
            ResourceReleaseError: If the driver reported an error while
                closing.  The resource is marked closed regardless.
        """
        self._closing = True
        if self._serial is None:
            logger.debug("[SERIAL-CLOSE] close() called on already-closed port %s", self.port)
            return

        handle, self._serial = self._serial, None
        try:
            handle.close()
        except Exception as exc:
            logger.warning("[SERIAL-CLOSE] Error closing port %s: %s", self.port, exc)
            raise ResourceReleaseError(f"Error closing port {self.port}: {exc}") from exc
        logger.info("[SERIAL-CLOSE] Closed %s", self.port)

    async def wait_for_unlock(self, timeout_ms: int = UNLOCK_TIMEOUT_MS) -> bool:
        """Wait until the handle is closed and every reader has let go.

        Returns:
            ``True`` if unlocked, ``False`` if ``timeout_ms`` expired first.
        """
        deadline = time.monotonic() + timeout_ms / 1000.0
        while not self.is_unlocked():
            if time.monotonic() >= deadline:
                logger.warning(
                    "[SERIAL-UNLOCK] %s still locked after %d ms (%d active readers) — giving up",
                    self.port, timeout_ms, self._readers,
                )
                return False
            await asyncio.sleep(self.poll_interval_s)
        logger.debug("[SERIAL-UNLOCK] %s unlocked", self.port)
        return True

    # ---- I/O ----

    async def write(self, data: bytes) -> int:
        """Write all of ``data`` to the device.

        Raises:
            PortNotOpenError: If the port is closed.
            SerialCommunicationError: On write failure.
        """
        ser = self._require_open("write")
        try:
            n = _write_all(ser, data, self.port or "", context="write")
        except serial.SerialException as exc:
            msg = (
                f"Failed to write {len(data)} bytes to serial port {self.port}: {exc}. "
                f"The device may have been disconnected."
            )
            logger.error("[SERIAL-WRITE] ERROR — %s", msg)
            raise SerialCommunicationError(msg) from exc
        except OSError as exc:
            msg = (
                f"OS error writing to serial port {self.port}: {exc}. "
                f"The device may have been physically removed."
            )
            logger.error("[SERIAL-WRITE] OS ERROR — %s", msg)
            raise SerialCommunicationError(msg) from exc
        await asyncio.sleep(0)
        return n

    async def raw_read(
        self,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> AsyncIterator[bytes]:
        """Yield byte chunks as they arrive.

        The sequence only ends after ``close()`` or when ``should_stop()``
        returns ``True``; a silent line just keeps polling.  Holds the reader
        lock until the iterator is exhausted or closed.

        Raises:
            PortNotOpenError: If the port is closed when iteration starts.
            SerialCommunicationError: On read failure while still open.
        """
        ser = self._require_open("raw_read")
        self._readers += 1
        logger.debug("[SERIAL-READ] Reader attached to %s (%d active)", self.port, self._readers)
        try:
            while not self._closing and ser.is_open:
                if should_stop is not None and should_stop():
                    break
                try:
                    waiting = ser.in_waiting
                    chunk = ser.read(waiting) if waiting > 0 else b""
                except (serial.SerialException, OSError) as exc:
                    if self._closing:
                        break
                    msg = (
                        f"Serial read error on {self.port}: {exc}. "
                        f"The device may have been disconnected during the read."
                    )
                    logger.error("[SERIAL-READ] ERROR — %s", msg)
                    raise SerialCommunicationError(msg) from exc

                if chunk:
                    yield chunk
                    await asyncio.sleep(0)
                else:
                    await asyncio.sleep(self.poll_interval_s)
        finally:
            self._readers -= 1
            logger.debug("[SERIAL-READ] Reader detached from %s (%d active)", self.port, self._readers)

    # ---- Control lines ----

    async def set_control_lines(self, dtr: bool, rts: bool) -> None:
        """Set DTR and RTS together."""
        ser = self._require_open("set control lines")
        try:
            ser.dtr = dtr
            ser.rts = rts
        except (serial.SerialException, OSError) as exc:
            msg = f"Failed to set control lines (dtr={dtr}, rts={rts}) on {self.port}: {exc}"
            logger.error("[SERIAL-LINES] ERROR — %s", msg)
            raise SerialCommunicationError(msg) from exc
        logger.debug("[SERIAL-LINES] %s dtr=%s rts=%s", self.port, dtr, rts)

    async def pulse_reset(self) -> None:
        """Hardware-reset the target: DTR low, RTS high for the pulse, RTS low."""
        logger.info("[SERIAL-RESET] Pulsing reset on %s (%d ms)", self.port, self.reset_pulse_ms)
        await self.set_control_lines(dtr=False, rts=True)
        await asyncio.sleep(self.reset_pulse_ms / 1000.0)
        await self.set_control_lines(dtr=False, rts=False)
