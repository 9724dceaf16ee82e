"""Container format detection and stream decoding.

Formats are identified by inspecting magic bytes against a small signature
table, never by file extension. When inspection is inconclusive, callers can
fall back to trying each known decoder in DECODER_ORDER.
"""

from __future__ import annotations

import bz2
import logging
import lzma
import shutil
import tempfile
import zlib
from pathlib import Path
from typing import BinaryIO, Protocol

from unraid_kmod.builds.runner import BuildExecutionError, run_command
from unraid_kmod.errors import FormatError
from unraid_kmod.types import ContainerFormat, RunDeadline

logger = logging.getLogger(__name__)

# (format, magic) pairs checked at offset 0, most specific first
SIGNATURES: tuple[tuple[ContainerFormat, bytes], ...] = (
    (ContainerFormat.SQUASHFS, b"hsqs"),
    (ContainerFormat.SQUASHFS, b"sqsh"),
    (ContainerFormat.XZ, b"\xfd7zXZ\x00"),
    (ContainerFormat.ZSTD, b"\x28\xb5\x2f\xfd"),
    (ContainerFormat.GZIP, b"\x1f\x8b"),
    (ContainerFormat.BZIP2, b"BZh"),
    (ContainerFormat.CPIO, b"070701"),
    (ContainerFormat.CPIO, b"070702"),
    (ContainerFormat.CPIO, b"070707"),
    (ContainerFormat.ZIP, b"PK\x03\x04"),
    # lzma-alone has no real magic; properties byte 0x5d is by far the most common
    (ContainerFormat.LZMA, b"\x5d\x00\x00"),
)

HEADER_SIZE = max(len(magic) for _, magic in SIGNATURES)

# Fallback order when magic inspection is inconclusive
DECODER_ORDER: tuple[ContainerFormat, ...] = (
    ContainerFormat.GZIP,
    ContainerFormat.XZ,
    ContainerFormat.LZMA,
    ContainerFormat.BZIP2,
)

CHUNK_SIZE = 1024 * 1024
ZSTD_TIMEOUT = 600


class UnsupportedContainerError(FormatError):
    """Raised when a container cannot be identified or decoded."""

    def __init__(self, message: str, code: str = "unsupported_container") -> None:
        super().__init__(message, code=code)


class _Decompressor(Protocol):
    eof: bool
    unused_data: bytes

    def decompress(self, data: bytes) -> bytes: ...


def detect_format(head: bytes) -> ContainerFormat:
    """Identify a container from its leading bytes.

    Args:
        head: At least HEADER_SIZE bytes from the start of the container.

    Returns:
        The detected format, or ContainerFormat.UNKNOWN.
    """
    for fmt, magic in SIGNATURES:
        if head.startswith(magic):
            return fmt
    return ContainerFormat.UNKNOWN


def new_decompressor(fmt: ContainerFormat) -> _Decompressor:
    """Return an incremental decompressor for a compression format.

    Raises:
        UnsupportedContainerError: If no stdlib decoder handles the format.
    """
    if fmt is ContainerFormat.GZIP:
        return zlib.decompressobj(wbits=zlib.MAX_WBITS | 16)
    if fmt is ContainerFormat.XZ:
        return lzma.LZMADecompressor(format=lzma.FORMAT_XZ)
    if fmt is ContainerFormat.LZMA:
        return lzma.LZMADecompressor(format=lzma.FORMAT_ALONE)
    if fmt is ContainerFormat.BZIP2:
        return bz2.BZ2Decompressor()
    raise UnsupportedContainerError(f"No stream decoder for {fmt.value}")


def decode_stream(
    src: BinaryIO,
    dst: BinaryIO,
    fmt: ContainerFormat,
    deadline: RunDeadline | None = None,
) -> int:
    """Decode one compressed stream from src into dst.

    Reading starts at the current position of src. Decoding stops at the end
    of the compressed stream; src is left positioned just past it so a
    following segment can be read.

    Args:
        src: Seekable binary input.
        dst: Binary output.
        fmt: Compression format of the stream.
        deadline: Optional run deadline checked per chunk.

    Returns:
        Number of compressed bytes consumed.

    Raises:
        UnsupportedContainerError: If the data is corrupt or truncated.
    """
    start = src.tell()
    decomp = new_decompressor(fmt)
    consumed = 0
    try:
        while not decomp.eof:
            if deadline is not None:
                deadline.check(f"{fmt.value} decompression")
            chunk = src.read(CHUNK_SIZE)
            if not chunk:
                break
            consumed += len(chunk)
            dst.write(decomp.decompress(chunk))
    except (zlib.error, lzma.LZMAError, OSError, EOFError, ValueError) as e:
        raise UnsupportedContainerError(f"Corrupt {fmt.value} stream: {e}") from e

    if not decomp.eof:
        raise UnsupportedContainerError(f"Truncated {fmt.value} stream")

    consumed -= len(decomp.unused_data)
    src.seek(start + consumed)
    return consumed


def decode_zstd(
    src: BinaryIO,
    dst: BinaryIO,
    log_path: Path,
    deadline: RunDeadline | None = None,
    timeout: float = ZSTD_TIMEOUT,
) -> int:
    """Decode a zstd stream through the `zstd` program.

    The remainder of src is treated as one zstd payload. The payload and its
    decoded form are staged in a temporary directory beside log_path.

    Returns:
        Number of compressed bytes consumed.

    Raises:
        ToolNotFoundError: If `zstd` is not installed.
        UnsupportedContainerError: If decoding fails or times out.
        PipelineCancelledError: If the run deadline expires.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=log_path.parent) as tmp:
        payload = Path(tmp) / "payload.zst"
        decoded = Path(tmp) / "payload"
        with payload.open("wb") as out:
            shutil.copyfileobj(src, out)
            consumed = out.tell()
        try:
            run_command(
                ["zstd", "-d", "-q", "-f", "-o", str(decoded), str(payload)],
                cwd=Path(tmp),
                log_path=log_path,
                timeout=timeout,
                deadline=deadline,
            )
        except BuildExecutionError as e:
            raise UnsupportedContainerError(
                f"zstd decompression failed: {e}", code="zstd_failed"
            ) from e
        with decoded.open("rb") as f:
            shutil.copyfileobj(f, dst)
    return consumed


def try_decoders(
    src: BinaryIO,
    dst: BinaryIO,
    deadline: RunDeadline | None = None,
    order: tuple[ContainerFormat, ...] = DECODER_ORDER,
) -> tuple[ContainerFormat, int]:
    """Try each known decoder in order until one decodes src.

    dst is truncated between attempts, so it must be seekable.

    Returns:
        Tuple of (format that succeeded, compressed bytes consumed).

    Raises:
        UnsupportedContainerError: If every decoder fails.
    """
    start = src.tell()
    failures: list[str] = []
    for fmt in order:
        src.seek(start)
        dst.seek(0)
        dst.truncate()
        try:
            consumed = decode_stream(src, dst, fmt, deadline=deadline)
        except UnsupportedContainerError as e:
            failures.append(f"{fmt.value}: {e}")
            continue
        logger.debug("Decoded stream at offset %d as %s", start, fmt.value)
        return fmt, consumed

    src.seek(start)
    raise UnsupportedContainerError(
        "Unrecognised container; tried decoders " + ", ".join(failures)
    )


__all__ = [
    "DECODER_ORDER",
    "HEADER_SIZE",
    "SIGNATURES",
    "UnsupportedContainerError",
    "decode_stream",
    "decode_zstd",
    "detect_format",
    "new_decompressor",
    "try_decoders",
]
