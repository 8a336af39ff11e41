"""
Segment compressor used by MML2 texture archives.

The input is cut into 0x2000-byte segments that are coded independently.
Each segment is a stream of 16-bit little-endian tokens paired with one
bitfield flag per token:
- flag 0: the token is a literal word copied to the output.
- flag 1: the token is a back-reference `(offset << 3) | (words - 2)`, where
  offset is a byte position inside the already-decoded part of the same
  segment and words is 2..9.
A flagged 0xFFFF token closes the segment. The flags of all segments are
concatenated and packed with `mml2_bits.pack_bitfield`.
"""

from __future__ import annotations

import logging
import struct
from typing import List, Tuple

from mml2_bits import pack_bitfield, unpack_bitfield
from mml2_errors import FormatError

log = logging.getLogger(__name__)

SEGMENT_LENGTH = 0x2000
MIN_WORDS = 2
MAX_WORDS = 9
END_OF_SEGMENT = 0xFFFF


def compress_segment(segment: bytes) -> Tuple[List[bool], bytes]:
    if len(segment) % 2:
        segment = bytes(segment) + b"\x00"
    bits: List[bool] = []
    out = bytearray()
    pos = 0
    n = len(segment)
    while pos < n:
        words_left = (n - pos) // 2
        max_words = min(words_left, MAX_WORDS)
        match_off = -1
        match_words = 0
        # No two-word match means no longer match either.
        if max_words >= MIN_WORDS and segment.find(segment[pos : pos + MIN_WORDS * 2], 0, pos) != -1:
            for count in range(max_words, MIN_WORDS - 1, -1):
                found = segment.find(segment[pos : pos + count * 2], 0, pos)
                if found != -1:
                    match_off = found
                    match_words = count
                    break

        if match_off != -1:
            out.extend(struct.pack("<H", (match_off << 3) | (match_words - MIN_WORDS)))
            bits.append(True)
            pos += match_words * 2
        else:
            out.extend(segment[pos : pos + 2])
            bits.append(False)
            pos += 2

    bits.append(True)
    out.extend(struct.pack("<H", END_OF_SEGMENT))
    return bits, bytes(out)


def compress(data: bytes) -> Tuple[bytes, bytes]:
    """Compress `data`, returning `(bitfield, payload)`."""
    count = (len(data) + SEGMENT_LENGTH - 1) // SEGMENT_LENGTH
    bits: List[bool] = []
    payload = bytearray()
    for i in range(count):
        log.debug("Compressing segment %d of %d", i + 1, count)
        seg_bits, seg_payload = compress_segment(data[i * SEGMENT_LENGTH : (i + 1) * SEGMENT_LENGTH])
        bits.extend(seg_bits)
        payload.extend(seg_payload)
    return pack_bitfield(bits), bytes(payload)


def decompress_stream(bitfield: bytes, payload: bytes, size: int) -> Tuple[bytes, int]:
    """Decode `size` bytes, also returning how many payload bytes were consumed."""
    bits = unpack_bitfield(bitfield)
    out = bytearray()
    bit_pos = 0
    src = 0
    n = len(payload)
    while len(out) < size:
        segment = bytearray()
        while True:
            if bit_pos >= len(bits):
                raise FormatError(f"Bitfield exhausted after 0x{len(out) + len(segment):X} bytes")
            if src + 2 > n:
                raise FormatError(f"Payload exhausted at token offset 0x{src:X}")
            flag = bits[bit_pos]
            bit_pos += 1
            token = struct.unpack_from("<H", payload, src)[0]
            src += 2
            if not flag:
                segment.extend(struct.pack("<H", token))
                continue
            if token == END_OF_SEGMENT:
                break
            off = token >> 3
            length = ((token & 0x7) + MIN_WORDS) * 2
            if off + length > len(segment):
                raise FormatError(f"Back-reference 0x{token:04X} reaches past decoded data")
            segment.extend(segment[off : off + length])
        if not segment:
            raise FormatError("Empty segment in compressed stream")
        out.extend(segment)
    return bytes(out[:size]), src


def decompress(bitfield: bytes, payload: bytes, size: int) -> bytes:
    return decompress_stream(bitfield, payload, size)[0]
