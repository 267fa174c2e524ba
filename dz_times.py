#!/usr/bin/env python3
"""Timestamp normalization for ZIP archive entries.

A ZIP entry can carry its modification time in two ways:

  - Coarse model: the DOS ``date_time`` stored in every local header and
    central directory record (2-second resolution, no timezone).
  - Extended model: the DOS field plus optional high-resolution times kept in
    extra field records, either the Info-ZIP extended timestamp (``UT``,
    0x5455) or the NTFS record (0x000A). Each of modification, access and
    creation time may be present or absent independently.

Both are read into one record, :class:`EntryTimes`, normalized by
:func:`normalize_times`, and written back by :func:`apply_times`. Every field
that is not a timestamp is copied byte for byte.

Normalized values:
  - DOS time is set to 1980-01-01 00:00:00, the zero of the DOS encoding.
  - Extended modification time is set to the Unix epoch.
  - Extended access and creation times are set to the Unix epoch only when the
    entry already had them. Absent values stay absent.
"""

from __future__ import annotations

import struct
import zipfile
from enum import Enum
from typing import Iterable, List, NamedTuple, Optional, Tuple

# =============================================================================
# Constants
# =============================================================================

DosTime = Tuple[int, int, int, int, int, int]

# Earliest instant the DOS encoding can represent.
DOS_EPOCH: DosTime = (1980, 1, 1, 0, 0, 0)

# High-resolution instants are nanoseconds since 1970-01-01T00:00:00Z.
EPOCH_NS = 0
NS_PER_SECOND = 1_000_000_000

EXTRA_ZIP64 = 0x0001
EXTRA_NTFS = 0x000A
EXTRA_EXT_TIMESTAMP = 0x5455

UT_MTIME = 0x01
UT_ATIME = 0x02
UT_CTIME = 0x04
_UT_BITS = (UT_MTIME, UT_ATIME, UT_CTIME)

NTFS_TIME_TAG = 0x0001
NTFS_TIME_SIZE = 24
# 100ns ticks between 1601-01-01 and 1970-01-01
NTFS_EPOCH_OFFSET = 116_444_736_000_000_000

# Everything a ZipInfo carries besides its name and DOS time.
_ENTRY_FIELDS = (
    "compress_type",
    "comment",
    "extra",
    "create_system",
    "create_version",
    "extract_version",
    "reserved",
    "flag_bits",
    "volume",
    "internal_attr",
    "external_attr",
    "file_size",
    "compress_size",
    "CRC",
)


# =============================================================================
# Data Types
# =============================================================================


class TimestampModel(Enum):
    """Which timestamp fields of an entry are considered."""

    COARSE = "coarse"
    EXTENDED = "extended"


class EntryTimes(NamedTuple):
    """All timestamps of one entry.

    ``dos_time`` is always present. The fine fields are ``None`` when the entry
    does not carry them, and are only populated for the extended model.
    """

    model: TimestampModel
    dos_time: DosTime
    modified_ns: Optional[int] = None
    accessed_ns: Optional[int] = None
    created_ns: Optional[int] = None


class ExtraField(NamedTuple):
    header_id: int
    data: bytes


# =============================================================================
# Extra field codec
# =============================================================================


def parse_extra(extra: bytes) -> Tuple[List[ExtraField], bytes]:
    """Split an extra field blob into records.

    Returns the complete records and whatever trailing bytes do not form one,
    so that ``build_extra(*parse_extra(blob)) == blob`` for any input.
    """
    fields: List[ExtraField] = []
    offset = 0
    while len(extra) - offset >= 4:
        header_id, size = struct.unpack_from("<HH", extra, offset)
        end = offset + 4 + size
        if end > len(extra):
            break
        fields.append(ExtraField(header_id, bytes(extra[offset + 4 : end])))
        offset = end
    return fields, bytes(extra[offset:])


def build_extra(fields: Iterable[ExtraField], tail: bytes = b"") -> bytes:
    parts = [struct.pack("<HH", f.header_id, len(f.data)) + f.data for f in fields]
    return b"".join(parts) + tail


def strip_extra(extra: bytes, header_ids: Iterable[int]) -> bytes:
    """Remove every record whose header id is in ``header_ids``."""
    drop = set(header_ids)
    fields, tail = parse_extra(extra)
    return build_extra([f for f in fields if f.header_id not in drop], tail)


def merge_local_extra(extra: bytes, local_extra: bytes) -> bytes:
    """Complete the timestamp records of ``extra`` from the local header copy.

    Info-ZIP writers store every UT value in the local header but only mtime
    in the central directory, under the same flags byte. Where the local copy
    of a timestamp record is longer, it replaces the central one.
    """
    local = {
        f.header_id: f.data
        for f in parse_extra(local_extra)[0]
        if f.header_id in (EXTRA_EXT_TIMESTAMP, EXTRA_NTFS)
    }
    if not local:
        return extra
    fields, tail = parse_extra(extra)
    merged = [
        ExtraField(f.header_id, local[f.header_id])
        if len(local.get(f.header_id, b"")) > len(f.data)
        else f
        for f in fields
    ]
    return build_extra(merged, tail)


def _decode_ut(data: bytes) -> Tuple[int, List[Optional[int]], bytes]:
    """Decode an extended timestamp record.

    Returns the flags byte, ``[mtime, atime, ctime]`` in Unix seconds (``None``
    when not stored) and any bytes after the last value. Central directory
    copies usually store only mtime even when the flags announce more.
    """
    values: List[Optional[int]] = [None, None, None]
    if not data:
        return 0, values, b""
    flags = data[0]
    offset = 1
    for index, bit in enumerate(_UT_BITS):
        if flags & bit and len(data) - offset >= 4:
            values[index] = struct.unpack_from("<i", data, offset)[0]
            offset += 4
    return flags, values, bytes(data[offset:])


def _encode_ut(flags: int, values: List[Optional[int]], rest: bytes = b"") -> bytes:
    packed = [struct.pack("<I", v & 0xFFFFFFFF) for v in values if v is not None]
    return bytes([flags]) + b"".join(packed) + rest


def _iter_ntfs_times(data: bytes) -> Iterable[int]:
    """Yield offsets of NTFS time attributes inside an NTFS record."""
    offset = 4  # reserved
    while len(data) - offset >= 4:
        tag, size = struct.unpack_from("<HH", data, offset)
        body = offset + 4
        if body + size > len(data):
            return
        if tag == NTFS_TIME_TAG and size >= NTFS_TIME_SIZE:
            yield body
        offset = body + size


def _seconds_to_ns(value: Optional[int]) -> Optional[int]:
    return None if value is None else value * NS_PER_SECOND


def _ns_to_seconds(value: int) -> int:
    return value // NS_PER_SECOND


def _filetime_to_ns(value: int) -> int:
    return (value - NTFS_EPOCH_OFFSET) * 100


def _ns_to_filetime(value: int) -> int:
    return max(0, value // 100 + NTFS_EPOCH_OFFSET) & 0xFFFFFFFFFFFFFFFF


# =============================================================================
# Entry adapters
# =============================================================================


def copy_entry(info: zipfile.ZipInfo) -> zipfile.ZipInfo:
    """Return a new ZipInfo with every metadata field of ``info``."""
    entry = zipfile.ZipInfo(info.filename)
    entry.date_time = tuple(info.date_time)
    for name in _ENTRY_FIELDS:
        if hasattr(info, name):
            setattr(entry, name, getattr(info, name))
    level = getattr(info, "_compresslevel", None)
    if level is not None:
        entry._compresslevel = level
    return entry


def read_times(info: zipfile.ZipInfo, model: TimestampModel) -> EntryTimes:
    """Read the timestamps of ``info`` that ``model`` knows about."""
    dos_time = tuple(info.date_time)
    if model is TimestampModel.COARSE:
        return EntryTimes(model, dos_time)

    ut: List[Optional[int]] = [None, None, None]
    ntfs: List[Optional[int]] = [None, None, None]
    fields, _ = parse_extra(info.extra)
    for field in fields:
        if field.header_id == EXTRA_EXT_TIMESTAMP:
            _, seconds, _ = _decode_ut(field.data)
            ut = [_seconds_to_ns(v) for v in seconds]
        elif field.header_id == EXTRA_NTFS:
            for body in _iter_ntfs_times(field.data):
                ntfs = [_filetime_to_ns(v) for v in struct.unpack_from("<QQQ", field.data, body)]

    # UT wins; NTFS fills in what UT does not store.
    merged = [u if u is not None else n for u, n in zip(ut, ntfs)]
    return EntryTimes(model, dos_time, *merged)


def _rewrite_ut(data: bytes, times: EntryTimes) -> bytes:
    flags, seconds, rest = _decode_ut(data)
    wanted = (times.modified_ns, times.accessed_ns, times.created_ns)
    for index, bit in enumerate(_UT_BITS):
        if not flags & bit:
            continue
        if wanted[index] is not None:
            seconds[index] = _ns_to_seconds(wanted[index])
        elif seconds[index] is None:
            # announced but neither stored nor known: drop the announcement
            flags &= ~bit
    if seconds[0] is None and times.modified_ns is not None:
        flags |= UT_MTIME
        seconds[0] = _ns_to_seconds(times.modified_ns)
    return _encode_ut(flags, seconds, rest)


def _rewrite_ntfs(data: bytes, times: EntryTimes) -> bytes:
    out = bytearray(data)
    wanted = (times.modified_ns, times.accessed_ns, times.created_ns)
    for body in _iter_ntfs_times(data):
        for index, value in enumerate(wanted):
            if value is not None:
                struct.pack_into("<Q", out, body + 8 * index, _ns_to_filetime(value))
    return bytes(out)


def _has_ntfs_times(data: bytes) -> bool:
    return any(True for _ in _iter_ntfs_times(data))


def _rewrite_extra(extra: bytes, times: EntryTimes) -> bytes:
    fields, tail = parse_extra(extra)
    rewritten: List[ExtraField] = []
    has_timestamps = False
    for field in fields:
        if field.header_id == EXTRA_EXT_TIMESTAMP:
            has_timestamps = True
            field = ExtraField(field.header_id, _rewrite_ut(field.data, times))
        elif field.header_id == EXTRA_NTFS and _has_ntfs_times(field.data):
            has_timestamps = True
            field = ExtraField(field.header_id, _rewrite_ntfs(field.data, times))
        rewritten.append(field)

    if not has_timestamps and times.modified_ns is not None:
        seconds = [_ns_to_seconds(times.modified_ns), None, None]
        rewritten.append(ExtraField(EXTRA_EXT_TIMESTAMP, _encode_ut(UT_MTIME, seconds)))

    return build_extra(rewritten, tail)


def apply_times(info: zipfile.ZipInfo, times: EntryTimes) -> zipfile.ZipInfo:
    """Return a copy of ``info`` carrying ``times``.

    Only the timestamp values change; the layout of existing extra records is
    kept. For the extended model a UT record holding only mtime is appended if
    the entry has no timestamp record at all.
    """
    entry = copy_entry(info)
    entry.date_time = tuple(times.dos_time)
    if times.model is TimestampModel.EXTENDED:
        entry.extra = _rewrite_extra(info.extra, times)
    return entry


# =============================================================================
# Normalization
# =============================================================================


def normalize_times(times: EntryTimes) -> EntryTimes:
    """Force every timestamp of ``times`` to the epoch."""
    if times.model is TimestampModel.COARSE:
        return times._replace(dos_time=DOS_EPOCH)

    return times._replace(
        dos_time=DOS_EPOCH,
        modified_ns=EPOCH_NS,
        accessed_ns=EPOCH_NS if times.accessed_ns is not None else None,
        created_ns=EPOCH_NS if times.created_ns is not None else None,
    )


def normalize_entry(info: zipfile.ZipInfo, model: TimestampModel) -> zipfile.ZipInfo:
    """Return a copy of ``info`` with its timestamps normalized under ``model``."""
    return apply_times(info, normalize_times(read_times(info, model)))
