"""Archive Extractor.

This module handles:
- Locating the module-tree and boot-image members inside a release zip
- Streaming a member out of the zip onto disk
- Unpacking the squashfs module tree with `unsquashfs`
- Decoding the boot image: a sequence of cpio and compressed-cpio segments,
  each cpio archive unpacked with the `cpio` program
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from unraid_kmod.builds.runner import BuildExecutionError, read_log, run_command
from unraid_kmod.errors import FormatError, ResolutionError
from unraid_kmod.extract.formats import (
    DECODER_ORDER,
    HEADER_SIZE,
    UnsupportedContainerError,
    decode_stream,
    decode_zstd,
    detect_format,
    try_decoders,
)
from unraid_kmod.types import ArtifactKind, ContainerFormat, ExtractedArtifact, ReleaseArchive, RunDeadline

logger = logging.getLogger(__name__)

MODULE_TREE_MEMBER = "bzmodules"
BOOT_IMAGE_MEMBER = "bzroot"

COPY_CHUNK_SIZE = 1024 * 1024
UNSQUASHFS_TIMEOUT = 1800
CPIO_TIMEOUT = 600

CPIO_NEWC_MAGICS = (b"070701", b"070702")
CPIO_ODC_MAGIC = b"070707"
CPIO_NEWC_HEADER_SIZE = 110
CPIO_ODC_HEADER_SIZE = 76
CPIO_TRAILER = b"TRAILER!!!\0"
SCAN_CHUNK_SIZE = 1024 * 1024


class ContainerNotFoundError(ResolutionError):
    """Raised when a member cannot be found in the release archive."""

    def __init__(
        self,
        member: str,
        archive: Path,
        layouts: list[str],
        code: str = "container_not_found",
    ) -> None:
        super().__init__(
            f"{member} not found in {archive}; tried layouts: {', '.join(layouts)}",
            code=code,
            remediation="Check that the archive is an Unraid release zip, or pass a different --url.",
        )
        self.member = member
        self.archive = archive
        self.layouts = layouts


class ExtractionError(FormatError):
    """Raised when a container is present but cannot be unpacked."""

    def __init__(
        self,
        message: str,
        code: str = "extraction_error",
        output: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.output = output


@dataclass(frozen=True)
class MemberLayout:
    """A direct path pattern for a member inside the release zip.

    Attributes:
        name: Layout name recorded on the extracted artifact.
        depth: Number of directory levels above the member.
    """

    name: str
    depth: int

    def matches(self, member_path: str, member: str) -> bool:
        parts = PurePosixPath(member_path).parts
        return len(parts) == self.depth + 1 and parts[-1] == member


# Direct layouts, probed in order before the full scan
MEMBER_LAYOUTS: tuple[MemberLayout, ...] = (
    MemberLayout(name="flat", depth=0),
    MemberLayout(name="nested", depth=1),
)

SCAN_LAYOUT = "scan"


def locate_member(zf: zipfile.ZipFile, member: str, archive: Path) -> tuple[zipfile.ZipInfo, str]:
    """Find a member by name using direct layouts, then a full scan.

    Args:
        zf: Open release zip.
        member: Member basename, e.g. 'bzmodules'.
        archive: Archive path (for error messages).

    Returns:
        Tuple of (zip entry, name of the layout that matched).

    Raises:
        ContainerNotFoundError: If neither tier finds the member.
    """
    infos = [info for info in zf.infolist() if not info.is_dir()]

    for layout in MEMBER_LAYOUTS:
        hits = sorted(
            (info for info in infos if layout.matches(info.filename, member)),
            key=lambda info: info.filename,
        )
        if hits:
            logger.debug("Found %s at %s (layout %s)", member, hits[0].filename, layout.name)
            return hits[0], layout.name

    logger.info("%s not at a known path in %s, scanning all members", member, archive.name)
    wanted = member.lower()
    hits = sorted(
        (info for info in infos if PurePosixPath(info.filename).name.lower() == wanted),
        key=lambda info: (len(PurePosixPath(info.filename).parts), info.filename),
    )
    if hits:
        logger.debug("Found %s at %s (full scan)", member, hits[0].filename)
        return hits[0], SCAN_LAYOUT

    tried = [f"{layout.name} ({'*/' * layout.depth}{member})" for layout in MEMBER_LAYOUTS]
    tried.append(f"{SCAN_LAYOUT} (any depth)")
    raise ContainerNotFoundError(member, archive, tried)


def extract_member(
    archive: Path,
    member: str,
    dest_dir: Path,
    deadline: RunDeadline | None = None,
) -> tuple[Path, str, str]:
    """Copy one member of the release zip to dest_dir.

    Args:
        archive: Release zip path.
        member: Member basename to locate.
        dest_dir: Directory to write into.
        deadline: Optional run deadline checked per chunk.

    Returns:
        Tuple of (extracted file path, member path inside the zip, layout name).

    Raises:
        ContainerNotFoundError: If the member is missing.
        ExtractionError: If the zip cannot be read.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / member
    try:
        with zipfile.ZipFile(archive) as zf:
            info, layout = locate_member(zf, member, archive)
            with zf.open(info) as src, dest.open("wb") as out:
                while chunk := src.read(COPY_CHUNK_SIZE):
                    if deadline is not None:
                        deadline.check(f"extracting {member}")
                    out.write(chunk)
    except (zipfile.BadZipFile, OSError, EOFError) as e:
        dest.unlink(missing_ok=True)
        raise ExtractionError(f"Failed to read {member} from {archive}: {e}") from e
    except BaseException:
        dest.unlink(missing_ok=True)
        raise

    logger.info("Extracted %s (%d bytes) from %s", info.filename, info.file_size, archive.name)
    return dest, info.filename, layout


def extract_module_tree(
    release: ReleaseArchive,
    work_dir: Path,
    deadline: RunDeadline | None = None,
    timeout: float = UNSQUASHFS_TIMEOUT,
) -> ExtractedArtifact:
    """Extract and unpack the squashfs module tree.

    Args:
        release: Validated release archive.
        work_dir: Per-run scratch directory.
        deadline: Optional run deadline.
        timeout: Timeout for unsquashfs in seconds.

    Returns:
        ExtractedArtifact whose path is the unpacked filesystem root.

    Raises:
        ContainerNotFoundError: If bzmodules is not in the archive.
        ExtractionError: If the member is not squashfs or unsquashfs fails.
    """
    image, member_path, layout = extract_member(
        release.path, MODULE_TREE_MEMBER, work_dir, deadline=deadline
    )

    with image.open("rb") as f:
        fmt = detect_format(f.read(HEADER_SIZE))
    if fmt is not ContainerFormat.SQUASHFS:
        raise ExtractionError(
            f"{member_path} in {release.path} is {fmt.value}, expected squashfs",
            code="not_squashfs",
        )

    dest = work_dir / "modules"
    if dest.exists():
        shutil.rmtree(dest)

    try:
        run_command(
            ["unsquashfs", "-f", "-d", str(dest), str(image)],
            cwd=work_dir,
            log_path=work_dir / "logs" / "unsquashfs.log",
            timeout=timeout,
            deadline=deadline,
        )
    except BuildExecutionError as e:
        raise ExtractionError(
            f"unsquashfs failed on {image}: {e}",
            code="unsquashfs_failed",
            output=e.output,
        ) from e

    return ExtractedArtifact(
        kind=ArtifactKind.MODULE_TREE,
        path=dest,
        container_format=fmt,
        member_name=member_path,
        layout=layout,
    )


def is_under_dir(base_dir: Path, target: Path) -> bool:
    """Return whether target, with symlinks resolved, stays inside base_dir."""
    return target.resolve().is_relative_to(base_dir.resolve())


def _skip_padding(f: BinaryIO) -> int:
    """Advance f past zero bytes; return the new position."""
    while True:
        pos = f.tell()
        chunk = f.read(4096)
        if not chunk:
            return pos
        stripped = chunk.lstrip(b"\0")
        if stripped:
            start = pos + len(chunk) - len(stripped)
            f.seek(start)
            return start


def cpio_archive_end(f: BinaryIO) -> int:
    """Find where the cpio archive starting at f's position ends.

    Scans for the trailer member header rather than walking every member.
    f is left at the archive start.

    Returns:
        Offset just past the trailer record, including newc alignment.

    Raises:
        ExtractionError: If the archive has no trailer.
    """
    start = f.tell()
    newc = f.read(len(CPIO_ODC_MAGIC)) != CPIO_ODC_MAGIC
    header_size = CPIO_NEWC_HEADER_SIZE if newc else CPIO_ODC_HEADER_SIZE
    magics = CPIO_NEWC_MAGICS if newc else (CPIO_ODC_MAGIC,)
    keep = header_size + len(CPIO_TRAILER)

    f.seek(start)
    buf_start, buf = start, b""
    try:
        while chunk := f.read(SCAN_CHUNK_SIZE):
            buf += chunk
            idx = buf.find(CPIO_TRAILER)
            while idx >= 0:
                header = idx - header_size
                # Member data can contain the trailer name; require a header before it
                if header >= 0 and buf[header : header + len(CPIO_ODC_MAGIC)] in magics:
                    end = buf_start + idx + len(CPIO_TRAILER)
                    if newc:
                        end += -(end - start) % 4
                    return end
                idx = buf.find(CPIO_TRAILER, idx + 1)
            if len(buf) > keep:
                buf_start += len(buf) - keep
                buf = buf[-keep:]
    finally:
        f.seek(start)

    raise ExtractionError(
        f"cpio archive at offset {start} has no trailer", code="cpio_truncated"
    )


def _copy_range(f: BinaryIO, end: int, dest: Path, deadline: RunDeadline | None) -> None:
    """Copy f from its position up to end into dest, leaving f at end."""
    remaining = end - f.tell()
    with dest.open("wb") as out:
        while remaining > 0:
            if deadline is not None:
                deadline.check("splitting boot image")
            chunk = f.read(min(COPY_CHUNK_SIZE, remaining))
            if not chunk:
                break
            out.write(chunk)
            remaining -= len(chunk)


def _entry_count(root: Path) -> int:
    return sum(1 for _ in root.rglob("*"))


def unpack_cpio(
    archive: Path,
    dest_dir: Path,
    log_path: Path,
    deadline: RunDeadline | None = None,
    timeout: float = CPIO_TIMEOUT,
) -> None:
    """Unpack one cpio archive with `cpio -idm --no-absolute-filenames`.

    Device nodes cannot be created without root, so a non-zero exit is only
    fatal when nothing was extracted.

    Raises:
        ToolNotFoundError: If `cpio` is not installed.
        ExtractionError: If cpio cannot run or extracts nothing.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    before = _entry_count(dest_dir)
    try:
        result = run_command(
            ["cpio", "-idm", "--no-absolute-filenames", "--quiet", "-F", str(archive.resolve())],
            cwd=dest_dir,
            log_path=log_path,
            timeout=timeout,
            deadline=deadline,
            check=False,
        )
    except BuildExecutionError as e:
        raise ExtractionError(
            f"cpio failed on {archive}: {e}", code="cpio_failed", output=e.output
        ) from e

    if result.success:
        return
    if _entry_count(dest_dir) > before:
        logger.warning(
            "cpio exited with %d on %s; some members were skipped (see %s)",
            result.exit_code,
            archive.name,
            log_path,
        )
        return
    raise ExtractionError(
        f"cpio exited with {result.exit_code} and extracted nothing from {archive}",
        code="cpio_failed",
        output=read_log(log_path),
    )


class _SegmentWriter:
    """Splits cpio archives out of a boot image and unpacks each in turn."""

    def __init__(self, scratch_dir: Path, dest_dir: Path, deadline: RunDeadline | None) -> None:
        self.scratch_dir = scratch_dir
        self.dest_dir = dest_dir
        self.deadline = deadline
        self.count = 0

    def log_path(self, tool: str) -> Path:
        return self.scratch_dir / "logs" / f"{tool}-{self.count}.log"

    def unpack(self, f: BinaryIO) -> None:
        """Unpack the cpio archive at f's position; f is left after it."""
        end = cpio_archive_end(f)
        part = self.scratch_dir / f"segment-{self.count}.cpio"
        try:
            _copy_range(f, end, part, self.deadline)
            unpack_cpio(part, self.dest_dir, self.log_path("cpio"), deadline=self.deadline)
        finally:
            part.unlink(missing_ok=True)
        self.count += 1

    def unpack_sequence(self, f: BinaryIO) -> None:
        """Unpack concatenated cpio archives from a decoded stream."""
        while True:
            _skip_padding(f)
            head = f.read(HEADER_SIZE)
            if not head:
                return
            f.seek(-len(head), 1)
            if detect_format(head) is not ContainerFormat.CPIO:
                logger.debug("Decoded stream holds trailing non-cpio data, stopping")
                return
            self.unpack(f)


def decode_boot_image(
    image: Path,
    dest_dir: Path,
    deadline: RunDeadline | None = None,
    scratch_dir: Path | None = None,
) -> ContainerFormat:
    """Unpack every segment of a boot image into dest_dir.

    A boot image is a concatenation of segments separated by zero padding:
    uncompressed cpio archives (early microcode) followed by one or more
    compressed cpio archives.

    Args:
        image: Boot image file.
        dest_dir: Destination directory.
        deadline: Optional run deadline.
        scratch_dir: Directory for split segments and tool logs
            (defaults to the image's directory).

    Returns:
        The format of the last segment decoded (the main filesystem).

    Raises:
        UnsupportedContainerError: If the first segment cannot be decoded.
        ExtractionError: If a cpio archive is truncated or cpio fails.
        ToolNotFoundError: If `cpio` (or `zstd` for zstd segments) is missing.
    """
    scratch_dir = scratch_dir or image.parent
    dest_dir.mkdir(parents=True, exist_ok=True)
    writer = _SegmentWriter(scratch_dir, dest_dir, deadline)
    main_format = ContainerFormat.UNKNOWN
    segments = 0

    with image.open("rb") as f:
        while True:
            offset = _skip_padding(f)
            head = f.read(HEADER_SIZE)
            if not head:
                break
            f.seek(offset)
            fmt = detect_format(head)

            if fmt is ContainerFormat.CPIO:
                writer.unpack(f)
            else:
                with tempfile.TemporaryFile(dir=scratch_dir) as decoded:
                    try:
                        if fmt in DECODER_ORDER:
                            decode_stream(f, decoded, fmt, deadline=deadline)
                        elif fmt is ContainerFormat.ZSTD:
                            decode_zstd(f, decoded, writer.log_path("zstd"), deadline=deadline)
                        else:
                            fmt, _ = try_decoders(f, decoded, deadline=deadline)
                    except UnsupportedContainerError:
                        if segments == 0:
                            raise
                        logger.warning(
                            "Ignoring undecodable data at offset %d of %s", offset, image
                        )
                        break
                    decoded.seek(0)
                    writer.unpack_sequence(decoded)

            logger.debug("Boot image segment %d at offset %d: %s", segments, offset, fmt.value)
            segments += 1
            main_format = fmt

    logger.info(
        "Decoded %d segment(s), %d cpio archive(s) from %s", segments, writer.count, image.name
    )
    return main_format


def extract_boot_image(
    release: ReleaseArchive,
    work_dir: Path,
    deadline: RunDeadline | None = None,
) -> ExtractedArtifact:
    """Extract the boot image from the release and unpack its filesystem.

    Args:
        release: Validated release archive.
        work_dir: Per-run scratch directory.
        deadline: Optional run deadline.

    Returns:
        ExtractedArtifact whose path is the unpacked initramfs root.

    Raises:
        ContainerNotFoundError: If bzroot is not in the archive.
        UnsupportedContainerError: If no decoder recognises the image.
        ExtractionError: If cpio cannot unpack the filesystem.
    """
    image, member_path, layout = extract_member(
        release.path, BOOT_IMAGE_MEMBER, work_dir, deadline=deadline
    )
    dest = work_dir / "initramfs"
    if not is_under_dir(work_dir, dest):
        raise ExtractionError(
            f"Refusing to unpack outside the work directory: {dest.resolve()}",
            code="path_escape",
        )
    if dest.exists():
        shutil.rmtree(dest)

    fmt = decode_boot_image(image, dest, deadline=deadline, scratch_dir=work_dir)
    return ExtractedArtifact(
        kind=ArtifactKind.BOOT_IMAGE,
        path=dest,
        container_format=fmt,
        member_name=member_path,
        layout=layout,
    )


__all__ = [
    "BOOT_IMAGE_MEMBER",
    "MEMBER_LAYOUTS",
    "MODULE_TREE_MEMBER",
    "ContainerNotFoundError",
    "ExtractionError",
    "MemberLayout",
    "cpio_archive_end",
    "decode_boot_image",
    "extract_boot_image",
    "extract_member",
    "extract_module_tree",
    "is_under_dir",
    "locate_member",
    "unpack_cpio",
]
