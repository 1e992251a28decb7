"""
Device private key loading.

The key is read once at start-up into a bounded buffer. A source larger than
the buffer is rejected before anything is read, and a short read is an error,
so callers never see a partial key.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

DEFAULT_PRIVATE_KEY_FILENAME = "ec_private.pem"
PRIVATE_KEY_BUFFER_SIZE = 256


class KeyAlgorithm(str, Enum):
    ES256 = "ES256"
    RS256 = "RS256"


class KeyEncoding(str, Enum):
    PEM = "PEM"


class KeyLoadError(Exception):
    """Base class for private key loading failures."""

    def __init__(self, message: str, source: str) -> None:
        super().__init__(message)
        self.source = source


class KeyNotFoundError(KeyLoadError):
    pass


class KeyTooLargeError(KeyLoadError):
    def __init__(self, source: str, size: int, capacity: int) -> None:
        super().__init__(
            f"private key file size of {size} bytes is larger than key buffer "
            f"size of {capacity} bytes",
            source,
        )
        self.size = size
        self.capacity = capacity


class KeyTruncatedError(KeyLoadError):
    pass


def _missing_key_message(source: str) -> str:
    return (
        "Missing private key required for JWT signing.\n"
        "Copy your device's private key (PEM) into a file at the following\n"
        f"path, relative to the current working directory: '{source}'.\n"
        "Alternatively set IOTC_PRIVATE_KEY_FILE or pass --private-key to\n"
        "point at the file."
    )


@dataclass(frozen=True, slots=True)
class PrivateKey:
    data: bytes = field(repr=False)
    algorithm: KeyAlgorithm = KeyAlgorithm.ES256
    encoding: KeyEncoding = KeyEncoding.PEM
    source: str = ""

    def __len__(self) -> int:
        return len(self.data)


def read_key_into(source: Union[str, Path], buffer: bytearray) -> int:
    """
    Read the whole key source into buffer and return the number of bytes.

    The buffer is only written after the full content has been read and
    checked against its capacity; on any error it is left untouched.
    """
    path = Path(source)
    capacity = len(buffer)
    try:
        fh = path.open("rb")
    except OSError as exc:
        raise KeyNotFoundError(_missing_key_message(str(path)), str(path)) from exc

    # st_size is advisory: pipes and procfs report 0, and files can grow.
    with fh:
        size = os.fstat(fh.fileno()).st_size
        if size > capacity:
            raise KeyTooLargeError(str(path), size, capacity)
        data = fh.read(capacity + 1)

    n = len(data)
    if n > capacity:
        raise KeyTooLargeError(str(path), n, capacity)
    if n < size:
        raise KeyTruncatedError(
            f"could not fully read private key file ({n} of {size} bytes)",
            str(path),
        )

    buffer[:n] = data
    return n


def load_private_key(
    source: Union[str, Path],
    max_size: int = PRIVATE_KEY_BUFFER_SIZE,
    *,
    algorithm: KeyAlgorithm = KeyAlgorithm.ES256,
    encoding: KeyEncoding = KeyEncoding.PEM,
) -> PrivateKey:
    """Load a private key of at most max_size bytes. Raises KeyLoadError."""
    if max_size <= 0:
        raise ValueError("max_size must be positive")
    buf = bytearray(max_size)
    n = read_key_into(source, buf)
    logger.debug("Loaded %d-byte %s key from %s", n, algorithm.value, source)
    return PrivateKey(
        data=bytes(buf[:n]),
        algorithm=KeyAlgorithm(algorithm),
        encoding=KeyEncoding(encoding),
        source=str(source),
    )
