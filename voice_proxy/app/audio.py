"""PCM16 <-> base64 translation and provider output buffering."""

from __future__ import annotations

import array
import base64
import logging
import re
import sys
from collections.abc import Iterable, Sequence

from .errors import AudioBufferOverflowError

_LOGGER = logging.getLogger(__name__)

_INT16_MIN = -32768
_INT16_MAX = 32767

# One base64 fragment: payload characters followed by its own padding.
_PADDED_SEGMENT = re.compile(r"[^=]*=*")


def pcm16_to_bytes(samples: Sequence[int]) -> bytes:
    """Packs signed 16-bit samples as little-endian bytes.

    Raises:
        ValueError: If any sample is outside the int16 range.
    """
    for sample in samples:
        if isinstance(sample, bool) or not isinstance(sample, int) or not _INT16_MIN <= sample <= _INT16_MAX:
            raise ValueError(f"Invalid PCM16 sample: {sample!r}")
    pcm = array.array("h", samples)
    if sys.byteorder == "big":
        pcm.byteswap()
    return pcm.tobytes()


def bytes_to_pcm16(data: bytes) -> list[int]:
    """Unpacks little-endian bytes into signed 16-bit samples.

    A trailing odd byte cannot form a sample and is dropped.
    """
    if len(data) % 2:
        _LOGGER.warning("Dropping trailing odd byte from PCM16 payload.", extra={"byte_count": len(data)})
        data = data[:-1]
    pcm = array.array("h")
    pcm.frombytes(data)
    if sys.byteorder == "big":
        pcm.byteswap()
    return pcm.tolist()


def encode_pcm16(samples: Sequence[int]) -> str:
    """Encodes int16 samples into the provider's base64 wire text."""
    return base64.b64encode(pcm16_to_bytes(samples)).decode("ascii")


def decode_base64_stream(text: str) -> bytes:
    """Decodes concatenated base64 text into one contiguous byte stream.

    Fragments produced independently may each carry padding, so padding in
    the middle of ``text`` marks a fragment boundary rather than the end of
    the data.

    Raises:
        binascii.Error: If a fragment is not valid base64.
    """
    decoded = bytearray()
    for segment in _PADDED_SEGMENT.findall(text.strip()):
        if segment:
            decoded.extend(base64.b64decode(segment, validate=True))
    return bytes(decoded)


def decode_pcm16_fragments(fragments: Iterable[str]) -> list[int]:
    """Concatenates text fragments in order, then decodes them to samples."""
    return bytes_to_pcm16(decode_base64_stream("".join(fragments)))


class AudioOutputBuffer:
    """Bounded append-only buffer of base64 audio fragments for one response.

    Fragments are only joined and decoded at ``flush()``; decoding them one
    at a time would split samples that straddle fragment boundaries.
    """

    def __init__(self, *, max_bytes: int) -> None:
        self._max_bytes = max_bytes
        self._fragments: list[str] = []
        self._size = 0

    def __len__(self) -> int:
        return len(self._fragments)

    def __bool__(self) -> bool:
        return bool(self._fragments)

    @property
    def size(self) -> int:
        """Number of buffered base64 characters."""
        return self._size

    def append(self, fragment: str) -> None:
        """Appends one fragment in arrival order.

        Raises:
            AudioBufferOverflowError: If the fragment would exceed the bound.
        """
        if not fragment:
            return
        if self._size + len(fragment) > self._max_bytes:
            raise AudioBufferOverflowError(
                f"Buffered output audio exceeds {self._max_bytes} bytes"
            )
        self._fragments.append(fragment)
        self._size += len(fragment)

    def flush(self) -> list[int]:
        """Decodes all buffered fragments into samples and empties the buffer.

        The buffer is emptied even when decoding fails.

        Raises:
            binascii.Error: If the buffered text is not valid base64.
        """
        fragments = self._fragments
        self.clear()
        return decode_pcm16_fragments(fragments)

    def clear(self) -> None:
        self._fragments = []
        self._size = 0

