"""Bootloader capability interface and its esptool-backed implementation."""

from __future__ import annotations

import asyncio
import logging
import zlib
from typing import Any, Optional, Protocol

from esptool.cmds import detect_chip

from .exceptions import EspSerialToolsError
from .serial_resource import SerialResource
from .types import LoaderProgressCallback

logger = logging.getLogger("esp_serial_tools.loader")

# Per-block timeout: one command timeout plus erase/write time per MB.
_BASE_TIMEOUT_S = 3.0
_WRITE_TIMEOUT_PER_MB_S = 40.0


class Loader(Protocol):
    async def connect_and_identify(self, resource: SerialResource, baud_rate: int) -> str:
        """Run the bootloader handshake and return a chip description."""

    async def write_flash(
        self,
        source: bytes,
        address: int,
        *,
        flash_size: str = "keep",
        erase_all: bool = False,
        compress: bool = True,
        progress_callback: Optional[LoaderProgressCallback] = None,
    ) -> None:
        """Write ``source`` at ``address``, reporting ``(written, total)`` per block."""

    async def finalize_after_flash(self) -> None:
        """Finish the flash session so the written image is committed."""

    async def erase_all(self) -> None:
        """Erase the whole flash chip."""

    def release(self) -> None:
        """Drop any reference to the transport."""


class EsptoolLoader:
    """``Loader`` implemented with the esptool package.

    esptool is synchronous, so each call runs in the default executor while
    the session keeps exclusive ownership of the port.  Progress callbacks are
    posted back to the event loop in order.
    """

    def __init__(self, use_stub: bool = True) -> None:
        self.use_stub = use_stub
        self._esp: Optional[Any] = None
        self._compressed = True

    def _require_esp(self, operation: str) -> Any:
        if self._esp is None:
            raise EspSerialToolsError(
                f"Cannot {operation}: bootloader handshake has not been performed"
            )
        return self._esp

    async def connect_and_identify(self, resource: SerialResource, baud_rate: int) -> str:
        ser = resource.handle
        loop = asyncio.get_running_loop()

        def _connect() -> str:
            esp = detect_chip(ser, baud_rate)
            description = esp.get_chip_description()
            if self.use_stub:
                esp = esp.run_stub()
            self._esp = esp
            return description

        description = await loop.run_in_executor(None, _connect)
        logger.info("[LOADER] Detected %s on %s", description, resource.port)
        return description

    async def write_flash(
        self,
        source: bytes,
        address: int,
        *,
        flash_size: str = "keep",
        erase_all: bool = False,
        compress: bool = True,
        progress_callback: Optional[LoaderProgressCallback] = None,
    ) -> None:
        esp = self._require_esp("write flash")
        loop = asyncio.get_running_loop()
        if flash_size != "keep":
            logger.warning("[LOADER] flash_size=%r ignored; only 'keep' is supported", flash_size)

        def _report(written: int, total: int) -> None:
            if progress_callback is not None:
                loop.call_soon_threadsafe(progress_callback, written, total)

        def _write() -> None:
            if erase_all:
                esp.erase_flash()

            image = source + b"\xff" * (-len(source) % 4)
            block_size = esp.FLASH_WRITE_SIZE
            self._compressed = compress
            if compress:
                payload = zlib.compress(image, 9)
                esp.flash_defl_begin(len(image), len(payload), address)
            else:
                payload = image
                esp.flash_begin(len(image), address)

            total = len(payload)
            timeout = _BASE_TIMEOUT_S + _WRITE_TIMEOUT_PER_MB_S * block_size / (1024 * 1024)
            seq = 0
            written = 0
            while written < total:
                block = payload[written:written + block_size]
                if compress:
                    esp.flash_defl_block(block, seq, timeout=timeout)
                else:
                    block = block + b"\xff" * (block_size - len(block))
                    esp.flash_block(block, seq, timeout=timeout)
                written = min(total, written + block_size)
                seq += 1
                _report(written, total)

        await loop.run_in_executor(None, _write)

    async def finalize_after_flash(self) -> None:
        esp = self._require_esp("finalize flash")
        loop = asyncio.get_running_loop()

        def _finalize() -> None:
            # Sending finish to the ROM loader would make it boot user code
            if not getattr(esp, "IS_STUB", False):
                return
            esp.flash_begin(0, 0)
            if self._compressed:
                esp.flash_defl_finish(False)
            else:
                esp.flash_finish(False)

        await loop.run_in_executor(None, _finalize)

    async def erase_all(self) -> None:
        esp = self._require_esp("erase flash")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, esp.erase_flash)

    def release(self) -> None:
        self._esp = None
