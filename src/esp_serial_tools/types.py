"""Type definitions for ESP Serial Tools."""

from typing import Callable, Union

# Flash feedback
ProgressCallback = Callable[[int], None]  # percentage 0..100
LogCallback = Callable[[str], None]  # one human-readable line
LoaderProgressCallback = Callable[[int, int], None]  # (written, total)

# Console streaming
ChunkSink = Callable[[bytes], None]
TerminalData = Union[str, bytes]
