"""SHA-256 digesting and verification for proxy binaries."""

import hashlib
from pathlib import Path
from typing import BinaryIO, Union

from proxyupgrader.constants import CHECKSUM_CHUNK_SIZE
from proxyupgrader.errors import ChecksumMismatch

Digestible = Union[bytes, bytearray, memoryview, BinaryIO]


class ChecksumVerifier:
    """Computes and compares lowercase hex SHA-256 digests.

    In-memory buffers are hashed in one call; streams are read in fixed
    64 KiB chunks so memory use does not depend on the binary size.
    """

    chunk_size = CHECKSUM_CHUNK_SIZE

    @classmethod
    def digest(cls, data: Digestible) -> str:
        if isinstance(data, (bytes, bytearray, memoryview)):
            return hashlib.sha256(data).hexdigest()

        hasher = hashlib.sha256()
        for chunk in iter(lambda: data.read(cls.chunk_size), b""):
            hasher.update(chunk)
        return hasher.hexdigest()

    @classmethod
    def digest_file(cls, path: Union[str, Path]) -> str:
        with open(path, "rb") as file_obj:
            return cls.digest(file_obj)

    @classmethod
    def matches(cls, data: Digestible, expected: str) -> bool:
        return cls.digest(data) == expected.strip().lower()

    @classmethod
    def verify_or_fail(cls, data: Digestible, expected: str):
        actual = cls.digest(data)
        if actual != expected.strip().lower():
            raise ChecksumMismatch(expected=expected, actual=actual)

    @classmethod
    def verify_file_or_fail(cls, path: Union[str, Path], expected: str):
        with open(path, "rb") as file_obj:
            cls.verify_or_fail(file_obj, expected)
