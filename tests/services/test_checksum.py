import hashlib
import io

import pytest

from proxyupgrader.errors import ChecksumMismatch
from proxyupgrader.services.checksum import ChecksumVerifier

ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class RecordingStream(io.BytesIO):
    def __init__(self, payload: bytes):
        super().__init__(payload)
        self.read_sizes = []

    def read(self, size=-1):
        self.read_sizes.append(size)
        return super().read(size)


def test_digest_of_known_buffers():
    assert ChecksumVerifier.digest(b"abc") == ABC_SHA256
    assert ChecksumVerifier.digest(b"") == EMPTY_SHA256


def test_digest_is_deterministic_and_matches_itself():
    payload = bytes(range(256)) * 3

    first = ChecksumVerifier.digest(payload)

    assert first == ChecksumVerifier.digest(bytearray(payload))
    assert ChecksumVerifier.matches(payload, first)


def test_flipping_any_bit_breaks_the_match():
    payload = b"\x00\x7f\x80\xff"
    expected = ChecksumVerifier.digest(payload)

    for byte_index in range(len(payload)):
        for bit in range(8):
            mutated = bytearray(payload)
            mutated[byte_index] ^= 1 << bit
            assert not ChecksumVerifier.matches(bytes(mutated), expected)


def test_matches_is_case_insensitive():
    assert ChecksumVerifier.matches(b"abc", ABC_SHA256.upper())
    assert ChecksumVerifier.matches(io.BytesIO(b"abc"), f"  {ABC_SHA256}\n")


def test_stream_is_read_in_fixed_chunks():
    payload = b"x" * (ChecksumVerifier.chunk_size * 2 + 10)
    stream = RecordingStream(payload)

    digest = ChecksumVerifier.digest(stream)

    assert digest == hashlib.sha256(payload).hexdigest()
    assert set(stream.read_sizes) == {ChecksumVerifier.chunk_size}
    assert len(stream.read_sizes) == 4


def test_verify_or_fail_reports_expected_and_actual():
    wrong = "0" * 64

    with pytest.raises(ChecksumMismatch) as excinfo:
        ChecksumVerifier.verify_or_fail(b"abc", wrong)

    assert excinfo.value.expected == wrong
    assert excinfo.value.actual == ABC_SHA256


def test_verify_or_fail_accepts_matching_stream():
    ChecksumVerifier.verify_or_fail(io.BytesIO(b"abc"), ABC_SHA256)


def test_streaming_large_file_matches_in_memory_digest(tmp_path):
    block = bytes(range(256)) * 4096
    payload = block * 100
    path = tmp_path / "proxy.bin"
    path.write_bytes(payload)

    streamed = ChecksumVerifier.digest_file(path)

    assert streamed == ChecksumVerifier.digest(payload)
    ChecksumVerifier.verify_file_or_fail(path, streamed)
