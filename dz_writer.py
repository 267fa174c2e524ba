#!/usr/bin/env python3
"""Archive writers that normalize entry timestamps as entries are added.

Hosts never build a ``zipfile.ZipFile`` writer themselves. They ask
:func:`create_writer` for a :class:`NormalizingZipWriter`, whose
:meth:`~NormalizingZipWriter.put_entry` is the one place every entry passes
through on its way into the archive. Timestamp normalization happens there,
so it cannot be forgotten by a caller.

Policies:
  - Compression: ``deflate`` or ``store``, applied to entries created through
    :meth:`~NormalizingZipWriter.new_entry`. Entries copied from another
    archive keep their own method.
  - Addressing: ``as-needed`` lets the container use ZIP64 records when an
    entry or the archive exceeds the classic limits; ``never`` turns that into
    an error, for consumers that cannot read ZIP64.
"""

from __future__ import annotations

import contextlib
import logging
import stat
import sys
import zipfile
import zlib
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

from dz_times import (
    DOS_EPOCH,
    EXTRA_ZIP64,
    TimestampModel,
    normalize_entry,
    strip_extra,
)

COPY_BUFFER_SIZE = 4096

FILE_MODE = 0o644
DIR_MODE = 0o755
MSDOS_DIR_FLAG = 0x10

Destination = Union[str, Path, BinaryIO]


# =============================================================================
# Errors
# =============================================================================


class ArchiveError(Exception):
    """Base class for every failure reported by the dz tools."""

    pass


class ConfigurationError(ArchiveError, ValueError):
    """Raised when a compression or addressing policy is not recognized."""

    pass


class ArchiveIOError(ArchiveError, OSError):
    """Raised when reading or writing an archive stream fails."""

    pass


class MalformedArchiveError(ArchiveError):
    """Raised when the input is not a ZIP container we can read."""

    pass


@contextlib.contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Re-raise library and OS failures as :class:`ArchiveError` kinds."""
    try:
        yield
    except ArchiveError:
        raise
    except (zipfile.BadZipFile, EOFError, zlib.error, NotImplementedError) as exc:
        raise MalformedArchiveError(f"{action}: {exc}") from exc
    except zipfile.LargeZipFile as exc:
        raise ArchiveIOError(f"{action}: {exc}") from exc
    except OSError as exc:
        raise ArchiveIOError(f"{action}: {exc}") from exc


# =============================================================================
# Logging
# =============================================================================

LOGGER_NAME = "dz"


def cli_logger(verbose: bool) -> Optional[logging.Logger]:
    """Return a logger writing plain messages to stderr, or None when quiet.

    Library calls log nothing unless a logger is handed to them.
    """
    if not verbose:
        return None
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


# =============================================================================
# Policies
# =============================================================================


class CompressionPolicy(Enum):
    DEFLATE = "deflate"
    STORE = "store"

    @property
    def method(self) -> int:
        if self is CompressionPolicy.DEFLATE:
            return zipfile.ZIP_DEFLATED
        return zipfile.ZIP_STORED


class AddressingPolicy(Enum):
    AS_NEEDED = "as-needed"
    NEVER = "never"

    @property
    def allow_zip64(self) -> bool:
        return self is AddressingPolicy.AS_NEEDED


def resolve_compression(value: Union[CompressionPolicy, str]) -> CompressionPolicy:
    if isinstance(value, CompressionPolicy):
        return value
    if isinstance(value, str):
        try:
            return CompressionPolicy(value.strip().lower())
        except ValueError:
            pass
    raise ConfigurationError(f"Unknown compression policy: {value!r}")


def resolve_addressing(value: Union[AddressingPolicy, str]) -> AddressingPolicy:
    if isinstance(value, AddressingPolicy):
        return value
    if isinstance(value, str):
        try:
            return AddressingPolicy(value.strip().lower())
        except ValueError:
            pass
    raise ConfigurationError(f"Unknown addressing policy: {value!r}")


# =============================================================================
# Payload copying
# =============================================================================


def copy_entry_bytes(source: BinaryIO, target: BinaryIO, buffer: bytearray) -> int:
    """Copy ``source`` to ``target`` through ``buffer`` until end of stream.

    Returns the number of bytes copied.
    """
    total = 0
    with memoryview(buffer) as view:
        while True:
            count = source.readinto(buffer)
            if not count:
                return total
            target.write(view[:count])
            total += count


# =============================================================================
# Writer sink
# =============================================================================


class NormalizingZipWriter:
    """A ZIP writer whose every entry has its timestamps normalized."""

    def __init__(
        self,
        archive: zipfile.ZipFile,
        compression: CompressionPolicy,
        addressing: AddressingPolicy,
        model: TimestampModel = TimestampModel.COARSE,
        logger: Optional[logging.Logger] = None,
    ):
        self._archive: Optional[zipfile.ZipFile] = archive
        self._compression = compression
        self._addressing = addressing
        self._model = model
        self._logger = logger
        self._buffer = bytearray(COPY_BUFFER_SIZE)

    @property
    def compression(self) -> CompressionPolicy:
        return self._compression

    @property
    def addressing(self) -> AddressingPolicy:
        return self._addressing

    @property
    def model(self) -> TimestampModel:
        return self._model

    @property
    def closed(self) -> bool:
        return self._archive is None

    @property
    def comment(self) -> bytes:
        return self._require_open().comment

    @comment.setter
    def comment(self, value: bytes) -> None:
        self._require_open().comment = value

    def _require_open(self) -> zipfile.ZipFile:
        if self._archive is None:
            raise ValueError("Attempt to use an archive writer that was already closed")
        return self._archive

    def new_entry(self, name: str) -> zipfile.ZipInfo:
        """Create metadata for a fresh entry following the writer's policies.

        Directory names (ending in ``/``) are always stored.
        """
        entry = zipfile.ZipInfo(filename=name, date_time=DOS_EPOCH)
        entry.create_system = 0  # "FAT"; avoids platform-specific attribute layouts
        if name.endswith("/"):
            entry.compress_type = zipfile.ZIP_STORED
            entry.external_attr = ((stat.S_IFDIR | DIR_MODE) << 16) | MSDOS_DIR_FLAG
        else:
            entry.compress_type = self._compression.method
            entry.external_attr = (stat.S_IFREG | FILE_MODE) << 16
        return entry

    def put_entry(self, info: zipfile.ZipInfo) -> zipfile.ZipInfo:
        """Return the normalized copy of ``info`` that will be written.

        Every entry written through this writer passes through here, but nothing
        is registered with the container; :meth:`open_entry` does that. ``info``
        is not modified. ZIP64 records are dropped; the container regenerates
        them as needed.
        """
        entry = normalize_entry(info, self._model)
        entry.extra = strip_extra(entry.extra, (EXTRA_ZIP64,))
        if self._logger is not None:
            self._logger.info("Writing %s", entry.filename)
        return entry

    def open_entry(self, info: zipfile.ZipInfo, size: Optional[int] = None) -> BinaryIO:
        """Register ``info`` and return a handle that receives its payload.

        ``size`` overrides the uncompressed size announced to the container,
        which decides whether the entry needs ZIP64 records.
        """
        archive = self._require_open()
        entry = self.put_entry(info)
        if size is not None:
            entry.file_size = size
        external_attr = entry.external_attr
        with translate_errors(f"Unable to write entry {entry.filename}"):
            handle = archive.open(entry, mode="w")
        # zipfile substitutes default permissions for a zero value; the
        # attribute only lives in the central directory, written on close.
        entry.external_attr = external_attr
        return handle

    def write_entry(
        self,
        info: zipfile.ZipInfo,
        source: BinaryIO,
        size: Optional[int] = None,
        buffer: Optional[bytearray] = None,
    ) -> int:
        """Write ``info`` with its payload read from ``source``; return bytes copied."""
        if buffer is None:
            buffer = self._buffer
        handle = self.open_entry(info, size=size)
        with translate_errors(f"Unable to write entry {info.filename}"):
            with handle:
                return copy_entry_bytes(source, handle, buffer)

    def writestr(self, info_or_name: Union[zipfile.ZipInfo, str], data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if isinstance(info_or_name, zipfile.ZipInfo):
            info = info_or_name
        else:
            info = self.new_entry(info_or_name)
        handle = self.open_entry(info, size=len(data))
        with translate_errors(f"Unable to write entry {info.filename}"):
            with handle:
                handle.write(data)

    def close(self) -> None:
        """Finish the archive. Closing twice does nothing."""
        if self._archive is None:
            return
        archive, self._archive = self._archive, None
        with translate_errors("Unable to finish archive"):
            archive.close()

    def __enter__(self) -> "NormalizingZipWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# =============================================================================
# Factory
# =============================================================================


def create_writer(
    destination: Destination,
    compression: Union[CompressionPolicy, str],
    addressing: Union[AddressingPolicy, str] = AddressingPolicy.AS_NEEDED,
    model: TimestampModel = TimestampModel.COARSE,
    logger: Optional[logging.Logger] = None,
) -> NormalizingZipWriter:
    """Open ``destination`` for writing and wrap it in a normalizing writer.

    Policies are validated before anything is opened, so a bad value never
    leaves a file behind.

    Raises:
        ConfigurationError: If a policy value is not recognized
        ArchiveIOError: If the destination cannot be opened
    """
    compression = resolve_compression(compression)
    addressing = resolve_addressing(addressing)

    if isinstance(destination, (str, Path)):
        target: Union[str, BinaryIO] = str(destination)
        label = str(destination)
    else:
        target = destination
        label = getattr(destination, "name", repr(destination))

    with translate_errors(f"Unable to create ZIP output stream for {label}"):
        archive = zipfile.ZipFile(
            target,
            mode="w",
            compression=compression.method,
            allowZip64=addressing.allow_zip64,
        )

    if logger is not None:
        logger.debug(
            "Opened %s (compression=%s, addressing=%s, model=%s)",
            label,
            compression.value,
            addressing.value,
            model.value,
        )
    return NormalizingZipWriter(archive, compression, addressing, model, logger)
