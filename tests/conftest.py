"""Shared fixtures: an on-disk cache store and builders for synthetic archives."""

import io
import stat
import tarfile
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from unraid_kmod.cache.store import CacheStore
from unraid_kmod.db import open_index

KVER = "6.12.54-Unraid"

# Minimal squashfs superblock magic followed by filler
SQUASHFS_IMAGE = b"hsqs" + b"\x00" * 92

CpioEntries = list[tuple[str, int, bytes]]


def _newc_header(ino: int, mode: int, size: int, namesize: int) -> bytes:
    fields = [ino, mode, 0, 0, 1, 0, size, 0, 0, 0, 0, namesize, 0]
    return b"070701" + b"".join(f"{v:08X}".encode() for v in fields)


def _pad4(data: bytes) -> bytes:
    return data + b"\0" * (-len(data) % 4)


def make_cpio(entries: CpioEntries) -> bytes:
    """Build a newc cpio archive from (name, mode, data) entries."""
    out = b""
    for ino, (name, mode, data) in enumerate([*entries, ("TRAILER!!!", 0, b"")], start=1):
        encoded = name.encode() + b"\0"
        out = _pad4(out + _newc_header(ino, mode, len(data), len(encoded)) + encoded)
        out = _pad4(out + data)
    return out


def read_cpio(data: bytes) -> CpioEntries:
    """Parse a newc cpio archive back into (name, mode, data) entries."""
    entries: CpioEntries = []
    pos = 0
    while True:
        header = data[pos : pos + 110]
        mode = int(header[14:22], 16)
        size = int(header[54:62], 16)
        namesize = int(header[94:102], 16)
        name = data[pos + 110 : pos + 109 + namesize].decode()
        pos += 110 + namesize
        pos += -pos % 4
        body = data[pos : pos + size]
        pos += size + (-size % 4)
        if name == "TRAILER!!!":
            return entries
        entries.append((name, mode, body))


def fake_cpio_run(cmd: list[str], cwd: Path | None = None, **kwargs: object) -> MagicMock:
    """Stand-in for subprocess.run executing `cpio -idm -F <archive>` in cwd."""
    assert cmd[0] == "cpio" and "--no-absolute-filenames" in cmd
    archive = Path(cmd[cmd.index("-F") + 1])
    for name, mode, body in read_cpio(archive.read_bytes()):
        path = Path(cwd) / name.lstrip("/")
        if stat.S_ISDIR(mode):
            path.mkdir(parents=True, exist_ok=True)
        elif stat.S_ISLNK(mode):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.symlink_to(body.decode())
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
    return MagicMock(returncode=0)


def make_zip(path: Path, members: dict[str, bytes]) -> Path:
    """Write a zip archive with the given members."""
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return path


def make_source_tarball(path: Path, top: str, files: dict[str, bytes]) -> Path:
    """Write a .tar.xz whose members live under top/."""
    with tarfile.open(path, "w:xz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


FILE_MODE = stat.S_IFREG | 0o644
DIR_MODE = stat.S_IFDIR | 0o755
LINK_MODE = stat.S_IFLNK | 0o777


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    """Cache store with an SQLite index inside tmp_path."""
    return CacheStore(tmp_path / "cache", open_index(f"sqlite:///{tmp_path / 'index.sqlite'}"))


@pytest.fixture
def cpio_builder() -> Callable[[CpioEntries], bytes]:
    return make_cpio


@pytest.fixture
def cpio_tool() -> Iterator[MagicMock]:
    """Route the `cpio` program to fake_cpio_run; yields the subprocess.run mock."""
    with (
        patch("unraid_kmod.builds.runner.shutil.which", return_value="/usr/bin/cpio"),
        patch("unraid_kmod.builds.runner.subprocess.run", side_effect=fake_cpio_run) as mock_run,
    ):
        yield mock_run


@pytest.fixture
def zip_builder() -> Callable[[Path, dict[str, bytes]], Path]:
    return make_zip


@pytest.fixture
def tarball_builder() -> Callable[[Path, str, dict[str, bytes]], Path]:
    return make_source_tarball


@pytest.fixture
def release_zip_bytes(tmp_path: Path) -> bytes:
    """A nested-layout release zip holding bzmodules and a gzip bzroot."""
    import gzip

    boot = make_cpio(
        [
            ("boot", DIR_MODE, b""),
            (f"boot/config-{KVER}", FILE_MODE, b"CONFIG_64BIT=y\nCONFIG_LOCALVERSION=\"-Unraid\"\n"),
        ]
    )
    path = make_zip(
        tmp_path / "release-src.zip",
        {
            "unRAIDServer/bzmodules": SQUASHFS_IMAGE,
            "unRAIDServer/bzroot": gzip.compress(boot),
            "unRAIDServer/changes.txt": b"release notes",
        },
    )
    return path.read_bytes()
