"""Cancellable background console read loop."""

from __future__ import annotations

import contextlib
import logging

from typeguard import typechecked

from .serial_resource import SerialResource
from .types import ChunkSink

logger = logging.getLogger("esp_serial_tools.read_loop")


@typechecked
class CancellationToken:
    """One-way stop flag shared between a loop and whoever may stop it."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ReadLoop:
    """Pulls chunks from a ``SerialResource`` and forwards them to a sink.

    The token is checked between chunks and between idle polls; an in-flight
    read is never interrupted.  ``stop()`` only requests cancellation; await
    the ``start()`` coroutine (or its task) to know the loop has exited.
    """

    def __init__(self, resource: SerialResource, token: CancellationToken) -> None:
        self.resource = resource
        self.token = token
        self.bytes_delivered = 0

    async def start(self, on_chunk: ChunkSink) -> int:
        """Run until the resource closes or the token is cancelled.

        Exceptions raised by ``on_chunk`` are logged and swallowed so a
        misbehaving sink cannot kill the console.

        Returns:
            Number of bytes delivered to ``on_chunk``.

        Raises:
            PortNotOpenError: If the resource is closed at start.
            SerialCommunicationError: On a read failure while open.
        """
        port_name = self.resource.port
        logger.info("[READ-LOOP] Starting console read on %s", port_name)

        chunks = self.resource.raw_read(should_stop=lambda: self.token.cancelled)
        async with contextlib.aclosing(chunks):
            async for chunk in chunks:
                if self.token.cancelled:
                    break
                if not chunk:
                    continue
                self.bytes_delivered += len(chunk)
                logger.debug(
                    "[READ-LOOP] +%d bytes from %s: %s",
                    len(chunk), port_name, chunk.hex(" "),
                )
                try:
                    on_chunk(chunk)
                except Exception as cb_exc:
                    logger.warning(
                        "[READ-LOOP] on_chunk callback raised %s: %s "
                        "(callback errors are swallowed to protect the read loop)",
                        type(cb_exc).__name__, cb_exc,
                    )

        logger.info(
            "[READ-LOOP] Quitting console on %s (cancelled=%s, %d bytes delivered)",
            port_name, self.token.cancelled, self.bytes_delivered,
        )
        return self.bytes_delivered

    def stop(self) -> None:
        """Request cancellation; returns before the loop has exited."""
        logger.debug("[READ-LOOP] Stop requested on %s", self.resource.port)
        self.token.cancel()
