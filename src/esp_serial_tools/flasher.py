"""Flash and erase orchestration on top of a ``Loader``."""

from __future__ import annotations

import dataclasses
import enum
import logging
from typing import Optional

from .exceptions import EmptyFirmwareError, FlashError
from .loader import Loader
from .serial_resource import SerialResource
from .types import LogCallback, ProgressCallback

logger = logging.getLogger("esp_serial_tools.flasher")


class FlashStatus(enum.Enum):
    PENDING = "pending"
    WRITING = "writing"
    FINALIZING = "finalizing"
    RESETTING = "resetting"
    DONE = "done"
    FAILED = "failed"


@dataclasses.dataclass
class FlashJob:
    """Mutable record of one flash run.

    Attributes:
        source: Firmware image bytes.
        target_address: Flash offset the image is written to.
        total_bytes: Total reported by the loader (compressed size when
            compression is enabled); ``len(source)`` until the first report.
        written_bytes: Last ``written`` value reported by the loader.
        status: Current stage of the job.
    """
    source: bytes
    target_address: int
    total_bytes: int = 0
    written_bytes: int = 0
    status: FlashStatus = FlashStatus.PENDING


def _noop_progress(percent: int) -> None:
    pass


def _noop_log(line: str) -> None:
    pass


class FlashOrchestrator:
    """Drives a flash or erase job end to end.

    Sequence for ``flash``:

    1. **Validate** — reject an empty image before touching the loader.
    2. **Write** — hand the image to the loader (keep flash size, no full
       erase, compressed), forwarding every block callback as a percentage
       and a log line.
    3. **Finalize** — let the loader commit the flash session.
    4. **Reset** — pulse the control lines so the new firmware boots.

    Flashing cannot be cancelled once started.
    """

    def __init__(self, loader: Loader, resource: SerialResource) -> None:
        self.loader = loader
        self.resource = resource

    async def flash(
        self,
        source: bytes,
        target_address: int,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> FlashJob:
        """Write ``source`` at ``target_address`` and reboot the target.

        Progress is non-decreasing and reaches 100 exactly once on success.
        On failure the last reported percentage stands.

        Returns:
            The finished ``FlashJob``.

        Raises:
            EmptyFirmwareError: If ``source`` is empty.
            FlashError: If any stage fails; ``stage`` names it.
        """
        progress = on_progress or _noop_progress
        log = on_log or _noop_log

        if not source:
            logger.error("[FLASH] Refusing to flash an empty firmware image")
            raise EmptyFirmwareError("Firmware image is empty")

        job = FlashJob(source=source, target_address=target_address, total_bytes=len(source))
        last_percent = -1

        def _on_block(written: int, total: int) -> None:
            nonlocal last_percent
            job.written_bytes = written
            job.total_bytes = total
            percent = round(written / total * 100) if total > 0 else 100
            log(f"Writing at 0x{target_address:08x}... ({percent}%) {written}/{total} bytes")
            # Never step back; 100 goes out once
            percent = max(percent, last_percent)
            if percent == 100 and last_percent == 100:
                return
            last_percent = percent
            progress(percent)

        logger.info(
            "[FLASH] Writing %d bytes at 0x%08x on %s ...",
            len(source), target_address, self.resource.port,
        )
        job.status = FlashStatus.WRITING
        await self._run_stage(
            job, "write",
            self.loader.write_flash(
                source,
                target_address,
                flash_size="keep",
                erase_all=False,
                compress=True,
                progress_callback=_on_block,
            ),
        )
        if last_percent < 100:
            last_percent = 100
            progress(100)

        job.status = FlashStatus.FINALIZING
        log("Finalizing flash ...")
        await self._run_stage(job, "finalize", self.loader.finalize_after_flash())

        job.status = FlashStatus.RESETTING
        log("Hard resetting via RTS pin ...")
        await self._run_stage(job, "reset", self.resource.pulse_reset())

        job.status = FlashStatus.DONE
        log(f"Flash complete: {len(source)} bytes at 0x{target_address:08x}")
        logger.info("[FLASH] Completed %d bytes at 0x%08x", len(source), target_address)
        return job

    async def erase(
        self,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ) -> None:
        """Erase the whole chip.  Reports 0% before and 100% after.

        Raises:
            FlashError: With stage ``erase`` on failure.
        """
        progress = on_progress or _noop_progress
        log = on_log or _noop_log

        progress(0)
        log("Erasing flash (this may take a while) ...")
        logger.info("[FLASH] Erasing flash on %s ...", self.resource.port)
        try:
            await self.loader.erase_all()
        except Exception as exc:
            msg = f"[erase] Flash erase failed on {self.resource.port}: {exc}"
            logger.error("[FLASH] %s", msg)
            raise FlashError(msg, stage="erase", detail=str(exc)) from exc
        progress(100)
        log("Flash erase complete")

    async def _run_stage(self, job: FlashJob, stage: str, operation) -> None:  # type: ignore[no-untyped-def]
        try:
            await operation
        except Exception as exc:
            job.status = FlashStatus.FAILED
            msg = (
                f"[{stage}] Flashing failed on {self.resource.port} after "
                f"{job.written_bytes}/{job.total_bytes} bytes: {exc}"
            )
            logger.error("[FLASH] %s", msg)
            raise FlashError(msg, stage=stage, detail=str(exc)) from exc
