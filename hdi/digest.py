from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class DigestResult:
    sha256: str
    length: int


def hash_stream(stream: BinaryIO) -> DigestResult:
    h = hashlib.sha256()
    length = 0
    while True:
        chunk = stream.read(_CHUNK_SIZE)
        if not chunk:
            break
        h.update(chunk)
        length += len(chunk)
    return DigestResult(sha256=h.hexdigest(), length=length)


def hash_file(path: Path, *, expected_length: Optional[int] = None) -> DigestResult:
    """Hash a file's bytes, failing when fewer or more bytes were read than expected."""
    with path.open("rb") as f:
        result = hash_stream(f)
    if expected_length is not None and result.length != expected_length:
        raise OSError(f"readLen != fileLen: {result.length} != {expected_length}: {path}")
    return result


def is_sha256_hex(value: object) -> bool:
    if not isinstance(value, str) or len(value) != 64:
        return False
    return all(c in "0123456789abcdef" for c in value)
