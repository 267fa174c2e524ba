#!/usr/bin/env python3
"""Rewrite a JAR/ZIP archive with every timestamp reset to the epoch.

Two builds of the same sources produce archives that differ only in the
timestamps recorded for each entry:

    $ unzip -l build/libs/app.jar
      Length      Date    Time    Name
    ---------  ---------- -----   ----
            0  06-27-2016 14:03   A/
         3945  06-27-2016 14:03   A/Foo.class
           25  06-27-2016 13:59   META-INF/MANIFEST.MF

This tool copies the archive entry by entry, normalizing the DOS time and the
extended (UT/NTFS) timestamps of every entry, so identical content yields an
identical archive:

    $ python dz_rewrite.py build/libs/app.jar fixed-app.jar
    $ unzip -l fixed-app.jar
      Length      Date    Time    Name
    ---------  ---------- -----   ----
           25  01-01-1980 00:00   META-INF/MANIFEST.MF
            0  01-01-1980 00:00   A/
         3945  01-01-1980 00:00   A/Foo.class

The manifest is always written first, as JAR readers expect. Payloads are
streamed through a fixed 4 KiB buffer; only the manifest is read whole. The
input must be seekable (a regular file, not a pipe); the output may be a pipe.

Exit codes:
    0 = Archive rewritten
    1 = Archive error (unreadable input, write failure)
    2 = Usage error
"""

from __future__ import annotations

import argparse
import logging
import struct
import sys
import zipfile
from pathlib import Path
from typing import BinaryIO, List, NamedTuple, Optional, Sequence, Tuple, Union

from dz_times import TimestampModel, merge_local_extra
from dz_times import copy_entry as clone_entry
from dz_writer import (
    COPY_BUFFER_SIZE,
    AddressingPolicy,
    ArchiveError,
    ArchiveIOError,
    CompressionPolicy,
    Destination,
    MalformedArchiveError,
    NormalizingZipWriter,
    cli_logger,
    create_writer,
    resolve_addressing,
    resolve_compression,
    translate_errors,
)

MANIFEST_NAME = "META-INF/MANIFEST.MF"

_FLAG_ENCRYPTED = 0x1

# signature, version, flags, method, DOS time and date, CRC, sizes, name and
# extra lengths
_LOCAL_HEADER = struct.Struct("<4s5H3L2H")
_LOCAL_SIGNATURE = b"PK\x03\x04"

Source = Union[str, Path, BinaryIO]


class RewriteResult(NamedTuple):
    """Outcome of one rewrite."""

    entry_count: int
    has_manifest: bool
    bytes_copied: int
    names: Tuple[str, ...]


def find_manifest(infos: Sequence[zipfile.ZipInfo]) -> Optional[zipfile.ZipInfo]:
    """Return the manifest entry, wherever it sits in the archive."""
    for info in infos:
        if info.filename.upper() == MANIFEST_NAME:
            return info
    return None


def read_local_extra(reader: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    """Return the extra field stored in the local header of ``info``.

    ``ZipInfo.extra`` is the central directory copy, which may hold fewer
    values than the local one.
    """
    fp = reader.fp
    fp.seek(info.header_offset)
    header = fp.read(_LOCAL_HEADER.size)
    if len(header) != _LOCAL_HEADER.size:
        raise zipfile.BadZipFile(f"Truncated local header: {info.filename}")
    fields = _LOCAL_HEADER.unpack(header)
    if fields[0] != _LOCAL_SIGNATURE:
        raise zipfile.BadZipFile(f"Bad local header signature: {info.filename}")
    name_length, extra_length = fields[-2], fields[-1]
    fp.seek(name_length, 1)
    extra = fp.read(extra_length)
    if len(extra) != extra_length:
        raise zipfile.BadZipFile(f"Truncated local header: {info.filename}")
    return extra


def _is_closed(stream: Union[Source, Destination]) -> bool:
    if isinstance(stream, (str, Path)):
        return False
    return bool(getattr(stream, "closed", False))


def _label(stream: Union[Source, Destination]) -> str:
    if isinstance(stream, (str, Path)):
        return str(stream)
    return str(getattr(stream, "name", repr(stream)))


class ArchiveRewriter:
    """Copies archives through a normalizing writer.

    One instance may run any number of rewrites in sequence; it owns the copy
    buffer shared by all entries. Instances are not shared between threads.
    """

    def __init__(
        self,
        compression: Union[CompressionPolicy, str] = CompressionPolicy.DEFLATE,
        addressing: Union[AddressingPolicy, str] = AddressingPolicy.AS_NEEDED,
        logger: Optional[logging.Logger] = None,
    ):
        self._compression = resolve_compression(compression)
        self._addressing = resolve_addressing(addressing)
        self._logger = logger
        self._buffer = bytearray(COPY_BUFFER_SIZE)

    def rewrite(self, source: Source, destination: Destination) -> RewriteResult:
        """Rewrite ``source`` into ``destination``.

        Paths are opened and closed here. Streams passed in are left open, but
        closing one of them while the rewrite runs aborts it with
        :class:`ArchiveIOError`. ``source`` must be seekable; a pipe is rejected
        before any output is written. ``destination`` may be a pipe.

        Raises:
            ArchiveIOError: If either stream cannot be opened, read or written
            MalformedArchiveError: If the input is not a readable ZIP container
        """
        try:
            return self._rewrite(source, destination)
        except ValueError as exc:
            if isinstance(exc, ArchiveError):
                raise
            if _is_closed(source) or _is_closed(destination):
                raise ArchiveIOError("Archive stream was closed during rewrite") from exc
            raise

    def _rewrite(self, source: Source, destination: Destination) -> RewriteResult:
        if not isinstance(source, (str, Path)) and not _is_closed(source):
            seekable = getattr(source, "seekable", None)
            if seekable is not None and not seekable():
                raise ArchiveIOError(f"Input stream must be seekable: {_label(source)}")

        with translate_errors(f"Unable to open archive {_label(source)}"):
            reader = zipfile.ZipFile(source, mode="r")

        with reader, self._open_sink(destination) as sink:
            infos = reader.infolist()
            names: List[str] = []
            copied = 0

            manifest = find_manifest(infos)
            if manifest is not None:
                copied += self.write_manifest(reader, sink, manifest)
                names.append(manifest.filename)

            for info in infos:
                if info is manifest:
                    continue
                copied += self.copy_entry(reader, sink, info)
                names.append(info.filename)

            sink.comment = reader.comment

        if self._logger is not None:
            self._logger.info("Rewrote %d entries (%d bytes)", len(names), copied)
        return RewriteResult(
            entry_count=len(names),
            has_manifest=manifest is not None,
            bytes_copied=copied,
            names=tuple(names),
        )

    def _open_sink(self, destination: Destination) -> NormalizingZipWriter:
        return create_writer(
            destination,
            self._compression,
            self._addressing,
            model=TimestampModel.EXTENDED,
            logger=self._logger,
        )

    @staticmethod
    def _check_readable(info: zipfile.ZipInfo) -> None:
        if info.flag_bits & _FLAG_ENCRYPTED:
            raise MalformedArchiveError(f"Encrypted entries are not supported: {info.filename}")

    @staticmethod
    def _source_entry(reader: zipfile.ZipFile, info: zipfile.ZipInfo) -> zipfile.ZipInfo:
        """Copy of ``info`` whose timestamp records include the local header values."""
        with translate_errors(f"Unable to read {info.filename}"):
            local_extra = read_local_extra(reader, info)
        entry = clone_entry(info)
        entry.extra = merge_local_extra(info.extra, local_extra)
        return entry

    def write_manifest(
        self,
        reader: zipfile.ZipFile,
        sink: NormalizingZipWriter,
        manifest: zipfile.ZipInfo,
    ) -> int:
        """Write the manifest as the next entry; return its size."""
        self._check_readable(manifest)
        entry = self._source_entry(reader, manifest)
        with translate_errors(f"Unable to read {manifest.filename}"):
            data = reader.read(manifest)
        sink.writestr(entry, data)
        return len(data)

    def copy_entry(
        self,
        reader: zipfile.ZipFile,
        sink: NormalizingZipWriter,
        info: zipfile.ZipInfo,
    ) -> int:
        """Copy one entry and its payload; return the payload size."""
        self._check_readable(info)
        entry = self._source_entry(reader, info)
        with translate_errors(f"Unable to read {info.filename}"):
            with reader.open(info) as source:
                return sink.write_entry(entry, source, size=info.file_size, buffer=self._buffer)


def rewrite(
    source: Source,
    destination: Destination,
    *,
    compression: Union[CompressionPolicy, str] = CompressionPolicy.DEFLATE,
    addressing: Union[AddressingPolicy, str] = AddressingPolicy.AS_NEEDED,
    logger: Optional[logging.Logger] = None,
) -> RewriteResult:
    """Rewrite ``source`` into ``destination`` with all timestamps normalized."""
    return ArchiveRewriter(compression, addressing, logger).rewrite(source, destination)


# =============================================================================
# CLI Interface
# =============================================================================


def _same_file(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve()
    except OSError:
        return False


# pragma: no mutate
def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Rewrite a JAR/ZIP archive with all timestamps set to the epoch",
    )
    parser.add_argument("input", type=Path, help="Archive to read (a seekable file, not a pipe)")
    parser.add_argument("output", type=Path, help="Archive to write (replaced if present)")
    parser.add_argument(
        "--zip64",
        choices=[p.value for p in AddressingPolicy],
        default=AddressingPolicy.AS_NEEDED.value,
        help="Whether ZIP64 records may be used when limits are exceeded",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log each entry written")
    args = parser.parse_args(argv)

    if _same_file(args.input, args.output):
        print("Error: input and output must be different files", file=sys.stderr)
        return 2

    try:
        result = rewrite(
            args.input,
            args.output,
            addressing=args.zip64,
            logger=cli_logger(args.verbose),
        )
    except ArchiveError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.verbose:
        print(f"Entries: {result.entry_count}", file=sys.stderr)
        print(f"Payload: {result.bytes_copied:,} bytes", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
