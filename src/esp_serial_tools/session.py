"""Session controller: the single arbiter of the serial resource.

State machine (initial and resting state ``DISCONNECTED``)::

    DISCONNECTED --connect--> CONNECTING --ok--> CONNECTED
                                         --fail--> DISCONNECTED
    CONNECTED --start_read--> READING --stop_read--> CONNECTED
    CONNECTED --flash--> FLASHING --done/error--> CONNECTED
    CONNECTED --erase--> ERASING --done/error--> CONNECTED
    any non-DISCONNECTED --disconnect--> DISCONNECTING --> DISCONNECTED

``FLASHING``/``ERASING`` and ``READING`` are never active at the same time.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import FrozenSet, Optional

from . import READ_LOOP_STOP_TIMEOUT_S, SERIAL_BAUD_RATE, UNLOCK_TIMEOUT_MS
from .exceptions import (
    FlashError,
    HandshakeError,
    OperationNotPermittedError,
    ResourceReleaseError,
    SerialCommunicationError,
)
from .flasher import FlashJob, FlashOrchestrator
from .loader import Loader
from .read_loop import CancellationToken, ReadLoop
from .serial_resource import SerialResource
from .terminal_buffer import AnsiTerminalBuffer
from .types import ChunkSink, LogCallback, ProgressCallback

logger = logging.getLogger("esp_serial_tools.session")


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READING = "reading"
    FLASHING = "flashing"
    ERASING = "erasing"
    DISCONNECTING = "disconnecting"


_OPEN_STATES = frozenset({SessionState.CONNECTED, SessionState.READING})


class SessionController:
    """Caller-owned session over one serial port.

    The loader and the serial resource are injected, so tests and other
    front ends can swap either.  Use as an async context manager to make sure
    the port is released::

        async with SessionController(loader, resource) as session:
            await session.connect(115200)
            await session.flash(firmware, 0x1000, on_progress=print)
    """

    def __init__(
        self,
        loader: Loader,
        resource: SerialResource,
        terminal: Optional[AnsiTerminalBuffer] = None,
        unlock_timeout_ms: int = UNLOCK_TIMEOUT_MS,
    ) -> None:
        self.loader = loader
        self.resource = resource
        self.terminal = terminal if terminal is not None else AnsiTerminalBuffer()
        self.unlock_timeout_ms = unlock_timeout_ms
        self.chip_description: Optional[str] = None
        self._state = SessionState.DISCONNECTED
        self._lifecycle_lock = asyncio.Lock()
        self._operation_lock = asyncio.Lock()
        self._read_loop: Optional[ReadLoop] = None
        self._read_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, new_state: SessionState) -> None:
        if new_state is not self._state:
            logger.debug("[SESSION] %s -> %s", self._state.name, new_state.name)
            self._state = new_state

    def _require(self, operation: str, allowed: FrozenSet[SessionState]) -> None:
        if self._state not in allowed:
            msg = f"Cannot {operation} while session is {self._state.name}"
            logger.warning("[SESSION] Rejected — %s", msg)
            raise OperationNotPermittedError(
                msg, operation=operation, state=self._state.name,
            )

    def _status(self, line: str) -> None:
        self.terminal.write_line(line)

    # ---- Connect ----

    async def connect(self, baud_rate: int = SERIAL_BAUD_RATE, identify: bool = True) -> Optional[str]:
        """Open the port and, with ``identify``, run the bootloader handshake.

        A connect while the port is already open reuses it without asking
        for a port again.

        Returns:
            The chip description, or ``None`` when not identified.

        Raises:
            NoPortSelectedError, PortUnavailableError, HandshakeError: The
                session is back in ``DISCONNECTED``.
            OperationNotPermittedError: If a flash, erase or connect is in
                progress.
        """
        async with self._lifecycle_lock:
            if self._state in _OPEN_STATES:
                if self.resource.is_open:
                    logger.info("[SESSION] Already connected to %s — reusing the open port", self.resource.port)
                    return self.chip_description
                logger.warning("[SESSION] Port %s is no longer open — reopening", self.resource.port)
                await self._stop_read_loop()
                await self._release_resource()
                self.chip_description = None
                self._transition(SessionState.DISCONNECTED)
            self._require("connect", frozenset({SessionState.DISCONNECTED}))

            self._transition(SessionState.CONNECTING)
            self._status("Requesting serial port access...")
            try:
                port = await self.resource.request_and_open(baud_rate)
                self._status(f"Port {port} selected, opening connection...")
                if identify:
                    self._status("Connecting to the ESP chip...")
                    await self._identify(baud_rate)
            except Exception as exc:
                self._status(f"Connection error: {exc}")
                await self._release_resource()
                self._transition(SessionState.DISCONNECTED)
                raise

            self._transition(SessionState.CONNECTED)
            logger.info("[SESSION] Connected to %s at %d baud", self.resource.port, baud_rate)
            return self.chip_description

    async def _identify(self, baud_rate: int) -> None:
        try:
            self.chip_description = await self.loader.connect_and_identify(self.resource, baud_rate)
        except Exception as exc:
            msg = f"Bootloader handshake failed on {self.resource.port}: {exc}"
            logger.error("[SESSION] %s", msg)
            raise HandshakeError(msg) from exc
        self._status(f"Chip detected: {self.chip_description}")

    # ---- Console ----

    def start_read(self, sink: Optional[ChunkSink] = None) -> asyncio.Task:
        """Start streaming console bytes into ``sink`` (default: the terminal).

        Returns:
            The background task running the read loop.
        """
        self._require("start reading", frozenset({SessionState.CONNECTED}))
        on_chunk = sink if sink is not None else self.terminal.write
        self._read_loop = ReadLoop(self.resource, CancellationToken())
        self._read_task = asyncio.create_task(self._run_read_loop(self._read_loop, on_chunk))
        self._transition(SessionState.READING)
        return self._read_task

    async def _run_read_loop(self, loop: ReadLoop, on_chunk: ChunkSink) -> int:
        try:
            return await loop.start(on_chunk)
        except SerialCommunicationError as exc:
            logger.error("[SESSION] Console read on %s stopped: %s", self.resource.port, exc)
            self._status(f"Console read error: {exc}")
            return loop.bytes_delivered
        finally:
            if self._read_loop is loop and self._state is SessionState.READING:
                self._read_loop = None
                self._read_task = None
                self._transition(SessionState.CONNECTED)

    async def stop_read(self) -> None:
        """Stop the console and wait for the loop to let go of the port."""
        self._require("stop reading", frozenset({SessionState.READING}))
        await self._stop_read_loop()
        self._transition(SessionState.CONNECTED)

    async def _stop_read_loop(self) -> None:
        loop, task = self._read_loop, self._read_task
        self._read_loop = None
        self._read_task = None
        if loop is None or task is None:
            return
        loop.stop()
        try:
            await asyncio.wait_for(asyncio.shield(task), READ_LOOP_STOP_TIMEOUT_S)
        except asyncio.TimeoutError:
            logger.warning(
                "[SESSION] Read loop on %s did not exit within %.1fs — cancelling task",
                self.resource.port, READ_LOOP_STOP_TIMEOUT_S,
            )
            task.cancel()
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        except Exception as exc:
            logger.warning("[SESSION] Read loop on %s ended with %s: %s", self.resource.port, type(exc).__name__, exc)

    async def send_line(self, text: str) -> int:
        """Send ``text`` terminated by CR LF (added only if missing)."""
        data = text if text.endswith("\r\n") else text + "\r\n"
        return await self.send_raw(data)

    async def send_raw(self, text: str) -> int:
        """Send ``text`` exactly as given."""
        self._require("send data", _OPEN_STATES)
        logger.debug("[SESSION] Sending %r to %s", text, self.resource.port)
        return await self.resource.write(text.encode("utf-8"))

    async def reset(self) -> None:
        """Pulse the reset lines; a running console keeps reading."""
        self._require("reset", _OPEN_STATES)
        await self.resource.pulse_reset()

    # ---- Flashing ----

    async def flash(
        self,
        source: bytes,
        target_address: int,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> FlashJob:
        """Flash ``source`` at ``target_address``.

        Raises:
            OperationNotPermittedError: Unless the session is ``CONNECTED``.
            FlashError: On any failure; the session stays ``CONNECTED``.
        """
        self._require("flash", frozenset({SessionState.CONNECTED}))
        async with self._operation_lock:
            # A disconnect queued on the lock may have run in the meantime
            self._require("flash", frozenset({SessionState.CONNECTED}))
            self._transition(SessionState.FLASHING)
            try:
                if self.chip_description is None:
                    try:
                        await self._identify(self.resource.baud_rate)
                    except HandshakeError as exc:
                        raise FlashError(str(exc), stage="connect", detail=str(exc)) from exc
                orchestrator = FlashOrchestrator(self.loader, self.resource)
                job = await orchestrator.flash(source, target_address, on_progress, on_log)
            except FlashError as exc:
                self._status(f"Flash failed: {exc}")
                raise
            finally:
                self._transition(SessionState.CONNECTED)
        self._status("Flash complete, device rebooted")
        return job

    async def erase(
        self,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> None:
        """Erase the whole chip.

        Raises:
            OperationNotPermittedError: Unless the session is ``CONNECTED``.
            FlashError: On failure; the session stays ``CONNECTED``.
        """
        self._require("erase", frozenset({SessionState.CONNECTED}))
        async with self._operation_lock:
            self._require("erase", frozenset({SessionState.CONNECTED}))
            self._transition(SessionState.ERASING)
            try:
                if self.chip_description is None:
                    try:
                        await self._identify(self.resource.baud_rate)
                    except HandshakeError as exc:
                        raise FlashError(str(exc), stage="connect", detail=str(exc)) from exc
                await FlashOrchestrator(self.loader, self.resource).erase(on_progress, on_log)
            finally:
                self._transition(SessionState.CONNECTED)

    # ---- Disconnect ----

    async def disconnect(self) -> None:
        """Release the port.  Never raises; always ends in ``DISCONNECTED``."""
        async with self._lifecycle_lock:
            if self._state is SessionState.DISCONNECTED:
                logger.debug("[SESSION] disconnect() called while already disconnected")
                return

            if self._operation_lock.locked():
                logger.info("[SESSION] Waiting for %s to finish before disconnecting", self._state.name)
            async with self._operation_lock:
                self._transition(SessionState.DISCONNECTING)
                try:
                    await self._stop_read_loop()
                    await self._release_resource()
                finally:
                    self.chip_description = None
                    self._transition(SessionState.DISCONNECTED)
            logger.info("[SESSION] Disconnected from %s", self.resource.port)

    async def _release_resource(self) -> None:
        try:
            self.loader.release()
        except Exception as exc:
            logger.warning("[SESSION] Loader release failed: %s", exc)
        try:
            self.resource.close()
        except ResourceReleaseError as exc:
            logger.warning("[SESSION] %s — continuing disconnect", exc)
        except Exception as exc:
            logger.warning(
                "[SESSION] %s",
                ResourceReleaseError(f"Unexpected error closing {self.resource.port}: {exc}"),
            )
        try:
            await self.resource.wait_for_unlock(self.unlock_timeout_ms)
        except Exception as exc:
            logger.warning("[SESSION] Waiting for unlock on %s failed: %s", self.resource.port, exc)

    # ---- Context manager ----

    async def __aenter__(self) -> SessionController:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.disconnect()
