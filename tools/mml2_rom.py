"""
Locate a file inside a raw Mode2/2352 BIN track and overwrite it in place.

Files are stored as 0x800-byte payload sectors spaced 0x930 bytes apart; the
bytes between payloads (sync, header, EDC/ECC) are never touched. A file is
found by searching for its first sector, then checking that every following
sector appears at the expected stride. The final sector may be short, so it
only has to land inside a 0x800..0x950 window after the previous one.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Tuple, Union

from mml2_errors import NoSpaceError, SegmentNotFoundError

log = logging.getLogger(__name__)

SECTOR_SIZE = 0x800
SECTOR_STRIDE = 0x930
LAST_SECTOR_MIN = 0x800
LAST_SECTOR_MAX = 0x950

Buffer = Union[bytes, bytearray, memoryview]


def split_sectors(data: Buffer) -> List[bytes]:
    return [bytes(data[i : i + SECTOR_SIZE]) for i in range(0, len(data), SECTOR_SIZE)]


def find_candidates(haystack: Buffer, first: bytes) -> List[int]:
    """Every offset where `first` occurs, overlapping matches included."""
    hay = bytes(haystack) if isinstance(haystack, memoryview) else haystack
    found: List[int] = []
    index = hay.find(first)
    while index != -1:
        found.append(index)
        index = hay.find(first, index + 1)
    return found


def verify_chain(haystack: Buffer, sectors: List[bytes], start: int) -> bool:
    hay = bytes(haystack) if isinstance(haystack, memoryview) else haystack
    last = start
    n = len(sectors)
    for i, sector in enumerate(sectors):
        index = hay.find(sector, last)
        if index == -1:
            return False
        diff = index - last
        if i == 0:
            if index != start:
                return False
        elif i < n - 1:
            if diff != SECTOR_STRIDE:
                return False
        elif diff < LAST_SECTOR_MIN or diff > LAST_SECTOR_MAX:
            return False
        last = index
    return True


def locate(needle: Buffer, haystack: Buffer, name: str = "file") -> int:
    """Return the start offset of `needle`; later candidates are tried first."""
    if not needle:
        raise SegmentNotFoundError(name)
    log.info("Searching for %s in ROM", name)
    sectors = split_sectors(needle)
    candidates = find_candidates(haystack, sectors[0])
    log.debug("%s: %d candidate(s) for the first sector", name, len(candidates))
    for start in reversed(candidates):
        if verify_chain(haystack, sectors, start):
            log.info("Found %s at 0x%X", name, start)
            return start
    raise SegmentNotFoundError(name)


def patch(rom: bytearray, offset: int, data: Buffer, capacity: int = 0) -> None:
    """Write `data` sector by sector from `offset`; bytes past a short final sector stay as they were."""
    sectors = split_sectors(data)
    if capacity and len(sectors) > capacity:
        raise NoSpaceError(f"Replacement needs {len(sectors)} sectors, original occupies {capacity}")
    end = offset + (len(sectors) - 1) * SECTOR_STRIDE + (len(sectors[-1]) if sectors else 0)
    if end > len(rom):
        raise NoSpaceError(f"Replacement runs past end of ROM (0x{end:X} > 0x{len(rom):X})")
    pos = offset
    for sector in sectors:
        rom[pos : pos + len(sector)] = sector
        pos += SECTOR_STRIDE


def update_rom(rom: bytearray, entries: Iterable[Tuple[str, Buffer, Buffer]]) -> List[Tuple[str, int]]:
    """Locate and replace each `(name, original, replacement)` in order; the first failure aborts."""
    done: List[Tuple[str, int]] = []
    for name, original, replacement in entries:
        offset = locate(original, rom, name)
        capacity = (len(original) + SECTOR_SIZE - 1) // SECTOR_SIZE
        log.info("Replacing %s in ROM at 0x%X", name, offset)
        patch(rom, offset, replacement, capacity)
        done.append((name, offset))
    return done
