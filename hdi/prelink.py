from __future__ import annotations

import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence

from hdi.digest import DigestResult, hash_stream

CHROOT_EXE_PATH = "/usr/sbin/chroot"
PRELINK_EXE_PATH = "/usr/sbin/prelink"
_MAX_ERROR_TEXT = 4096


class Unprelinker(ABC):
    """Recovers the bytes a prelinked binary had before load-time relocation."""

    @abstractmethod
    def hash_original(self, path: str, *, chroot: Optional[Path] = None) -> DigestResult:
        """Return the digest and length of the unprelinked content of `path`.

        When `chroot` is given, `path` is interpreted inside that root.
        """


class PrelinkUnprelinker(Unprelinker):
    def __init__(self, *, prelink_path: str = PRELINK_EXE_PATH, chroot_path: str = CHROOT_EXE_PATH) -> None:
        self._prelink_path = prelink_path
        self._chroot_path = chroot_path

    def command(self, path: str, *, chroot: Optional[Path] = None) -> list[str]:
        cmd: list[str] = []
        if chroot is not None:
            cmd.extend([self._chroot_path, str(chroot)])
        cmd.extend([self._prelink_path, "--verify", path])
        return cmd

    def hash_original(self, path: str, *, chroot: Optional[Path] = None) -> DigestResult:
        cmd = self.command(path, chroot=chroot)
        return run_and_hash(cmd)


class PrelinkError(OSError):
    """The unprelink command exited non-zero, e.g. a prelinked binary changed after prelinking."""


def run_and_hash(cmd: Sequence[str]) -> DigestResult:
    """Run a command, hashing its standard output; a non-zero exit raises PrelinkError."""
    with tempfile.TemporaryFile() as errors:
        proc = subprocess.Popen(list(cmd), stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=errors)
        try:
            assert proc.stdout is not None
            result = hash_stream(proc.stdout)
        finally:
            if proc.stdout is not None:
                proc.stdout.close()
            proc.wait()
        if proc.returncode == 0:
            return result
        size = errors.seek(0, os.SEEK_END)
        errors.seek(max(0, size - _MAX_ERROR_TEXT))
        detail = errors.read().decode("utf-8", errors="replace").strip()
    raise PrelinkError(f"Non-zero response from command: {' '.join(cmd)}: rc={proc.returncode}: {detail}")
