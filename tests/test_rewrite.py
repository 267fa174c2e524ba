from __future__ import annotations

import io
import random
import struct
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable

import pytest

import dz_rewrite
import dz_times
from dz_times import DOS_EPOCH, TimestampModel
from dz_writer import ArchiveIOError, ConfigurationError, MalformedArchiveError
from jar_factory import (
    BUILD_SECONDS,
    FOO_CLASS,
    LATER_SECONDS,
    LATER_TIME,
    MANIFEST,
    infozip_archive,
    make_info,
    sample_entries,
    write_archive,
)

EXPECTED_ORDER = ("META-INF/MANIFEST.MF", "A/", "A/Foo.class")


def test_rewrite_moves_manifest_first_and_resets_times(sample_jar: Path, tmp_path: Path) -> None:
    out = tmp_path / "fixed.jar"
    result = dz_rewrite.rewrite(sample_jar, out)

    assert result.names == EXPECTED_ORDER
    assert result.entry_count == 3
    assert result.has_manifest is True
    assert result.bytes_copied == len(MANIFEST) + len(FOO_CLASS)

    with zipfile.ZipFile(out) as zf:
        infos = zf.infolist()
        assert tuple(i.filename for i in infos) == EXPECTED_ORDER
        assert [i.file_size for i in infos] == [25, 0, 3945]
        assert zf.read("META-INF/MANIFEST.MF") == MANIFEST
        assert zf.read("A/Foo.class") == FOO_CLASS
        assert zf.testzip() is None

    for info in infos:
        assert info.date_time == DOS_EPOCH
        times = dz_times.read_times(info, TimestampModel.EXTENDED)
        assert times.modified_ns == 0
        assert times.accessed_ns in (None, 0)
        assert times.created_ns in (None, 0)


def test_rewrite_keeps_fine_fields_that_were_present(sample_jar: Path, tmp_path: Path) -> None:
    out = tmp_path / "fixed.jar"
    dz_rewrite.rewrite(sample_jar, out)

    with zipfile.ZipFile(out) as zf:
        foo = dz_times.read_times(zf.getinfo("A/Foo.class"), TimestampModel.EXTENDED)
        folder = dz_times.read_times(zf.getinfo("A/"), TimestampModel.EXTENDED)

    assert (foo.modified_ns, foo.accessed_ns, foo.created_ns) == (0, 0, 0)
    assert (folder.modified_ns, folder.accessed_ns, folder.created_ns) == (0, None, None)


def _notes_zip(tmp_path: Path) -> Path:
    return infozip_archive(tmp_path / "notes.zip", "notes.txt", b"hi\n", BUILD_SECONDS, BUILD_SECONDS + 5)


def test_read_local_extra_returns_local_header_copy(tmp_path: Path) -> None:
    src = _notes_zip(tmp_path)
    with zipfile.ZipFile(src) as zf:
        info = zf.getinfo("notes.txt")
        local = dz_rewrite.read_local_extra(zf, info)
        assert zf.read(info) == b"hi\n"

    assert info.extra == struct.pack("<HHBi", 0x5455, 5, 0x03, BUILD_SECONDS)
    assert local == struct.pack("<HHBii", 0x5455, 9, 0x03, BUILD_SECONDS, BUILD_SECONDS + 5)


def test_rewrite_zeroes_ut_values_only_in_local_header(tmp_path: Path) -> None:
    src = _notes_zip(tmp_path)
    out = tmp_path / "fixed.zip"
    dz_rewrite.rewrite(src, out)

    with zipfile.ZipFile(out) as zf:
        info = zf.getinfo("notes.txt")
        local = dz_rewrite.read_local_extra(zf, info)
        assert zf.read(info) == b"hi\n"

    expected = struct.pack("<HHBii", 0x5455, 9, 0x03, 0, 0)
    assert local == expected
    assert info.extra == expected
    times = dz_times.read_times(info, TimestampModel.EXTENDED)
    assert (times.modified_ns, times.accessed_ns, times.created_ns) == (0, 0, None)


def test_rewrite_of_infozip_archive_is_idempotent(tmp_path: Path) -> None:
    src = _notes_zip(tmp_path)
    once = tmp_path / "once.zip"
    twice = tmp_path / "twice.zip"
    dz_rewrite.rewrite(src, once)
    dz_rewrite.rewrite(once, twice)
    assert once.read_bytes() == twice.read_bytes()


def test_bad_local_header_raises_malformed(tmp_path: Path) -> None:
    src = write_archive(tmp_path / "bad.zip", [(make_info("a.txt"), b"a")])
    raw = bytearray(src.read_bytes())
    raw[0:4] = b"XXXX"
    src.write_bytes(bytes(raw))

    with pytest.raises(MalformedArchiveError, match="Bad local header"):
        dz_rewrite.rewrite(src, tmp_path / "out.zip")


def test_rewrite_keeps_entry_metadata(sample_jar: Path, tmp_path: Path) -> None:
    out = tmp_path / "fixed.jar"
    dz_rewrite.rewrite(sample_jar, out)

    with zipfile.ZipFile(sample_jar) as before, zipfile.ZipFile(out) as after:
        for original in before.infolist():
            copy = after.getinfo(original.filename)
            assert copy.compress_type == original.compress_type
            assert copy.external_attr == original.external_attr
            assert copy.CRC == original.CRC
            assert copy.file_size == original.file_size


def test_rewrite_is_deterministic_across_build_times(
    make_sample_jar: Callable[..., Path], tmp_path: Path
) -> None:
    first = make_sample_jar("first.jar")
    second = make_sample_jar("second.jar", LATER_TIME, LATER_SECONDS)
    assert first.read_bytes() != second.read_bytes()

    dz_rewrite.rewrite(first, tmp_path / "first-fixed.jar")
    dz_rewrite.rewrite(second, tmp_path / "second-fixed.jar")

    assert (tmp_path / "first-fixed.jar").read_bytes() == (tmp_path / "second-fixed.jar").read_bytes()


def test_rewrite_does_not_depend_on_wall_clock(
    sample_jar: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    dz_rewrite.rewrite(sample_jar, tmp_path / "now.jar")
    monkeypatch.setattr(time, "time", lambda: 2_000_000_000.0)
    dz_rewrite.rewrite(sample_jar, tmp_path / "later.jar")

    assert (tmp_path / "now.jar").read_bytes() == (tmp_path / "later.jar").read_bytes()


def test_rewrite_is_idempotent(sample_jar: Path, tmp_path: Path) -> None:
    once = tmp_path / "once.jar"
    twice = tmp_path / "twice.jar"
    dz_rewrite.rewrite(sample_jar, once)
    dz_rewrite.rewrite(once, twice)
    assert once.read_bytes() == twice.read_bytes()


def test_rewrite_large_payloads_are_exact(tmp_path: Path) -> None:
    rng = random.Random(7)
    noise = bytes(rng.getrandbits(8) for _ in range(33_000))
    text = b"line of repetitive build output\n" * 2000
    src = write_archive(
        tmp_path / "big.jar",
        [
            (make_info("noise.bin", compress_type=zipfile.ZIP_STORED), noise),
            (make_info("log.txt"), text),
        ],
    )

    out = tmp_path / "fixed.jar"
    result = dz_rewrite.rewrite(src, out)

    assert result.bytes_copied == len(noise) + len(text)
    with zipfile.ZipFile(src) as before, zipfile.ZipFile(out) as after:
        assert after.read("noise.bin") == noise
        assert after.read("log.txt") == text
        assert after.getinfo("noise.bin").compress_type == zipfile.ZIP_STORED
        assert after.getinfo("log.txt").compress_type == zipfile.ZIP_DEFLATED
        assert after.getinfo("noise.bin").CRC == before.getinfo("noise.bin").CRC


def test_rewrite_without_manifest_keeps_order(tmp_path: Path) -> None:
    src = write_archive(
        tmp_path / "plain.zip",
        [(make_info("b.txt"), b"b"), (make_info("a.txt"), b"a")],
    )
    result = dz_rewrite.rewrite(src, tmp_path / "out.zip")
    assert result.names == ("b.txt", "a.txt")
    assert result.has_manifest is False


def test_manifest_name_matches_case_insensitively(tmp_path: Path) -> None:
    src = write_archive(
        tmp_path / "lower.jar",
        [(make_info("a.txt"), b"a"), (make_info("meta-inf/manifest.mf"), MANIFEST)],
    )
    result = dz_rewrite.rewrite(src, tmp_path / "out.jar")
    assert result.names == ("meta-inf/manifest.mf", "a.txt")


def test_rewrite_empty_archive(tmp_path: Path) -> None:
    src = write_archive(tmp_path / "empty.zip", [])
    out = tmp_path / "out.zip"
    result = dz_rewrite.rewrite(src, out)
    assert result.entry_count == 0
    with zipfile.ZipFile(out) as zf:
        assert zf.infolist() == []


def test_rewrite_keeps_comments(tmp_path: Path) -> None:
    info = make_info("a.txt")
    info.comment = b"entry note"
    src = write_archive(tmp_path / "c.zip", [(info, b"a")], comment=b"built by ci")
    out = tmp_path / "out.zip"
    dz_rewrite.rewrite(src, out)

    with zipfile.ZipFile(out) as zf:
        assert zf.comment == b"built by ci"
        assert zf.getinfo("a.txt").comment == b"entry note"


def test_find_manifest() -> None:
    infos = [make_info("A/"), make_info("META-INF/MANIFEST.MF")]
    assert dz_rewrite.find_manifest(infos) is infos[1]
    assert dz_rewrite.find_manifest(infos[:1]) is None


# =============================================================================
# Streams
# =============================================================================


def test_rewrite_streams_are_left_open(sample_jar: Path) -> None:
    src = io.BytesIO(sample_jar.read_bytes())
    dst = io.BytesIO()

    result = dz_rewrite.rewrite(src, dst)

    assert not src.closed
    assert not dst.closed
    assert result.names == EXPECTED_ORDER
    with zipfile.ZipFile(io.BytesIO(dst.getvalue())) as zf:
        assert tuple(zf.namelist()) == EXPECTED_ORDER


def test_closed_input_stream_raises_archive_io_error(sample_jar: Path) -> None:
    src = io.BytesIO(sample_jar.read_bytes())
    src.close()
    with pytest.raises(ArchiveIOError, match="closed"):
        dz_rewrite.rewrite(src, io.BytesIO())


def test_closed_output_stream_raises_archive_io_error(sample_jar: Path) -> None:
    dst = io.BytesIO()
    dst.close()
    with pytest.raises(ArchiveIOError):
        dz_rewrite.rewrite(sample_jar, dst)


class ClosingReader(io.BytesIO):
    """Archive source that closes ``victim`` once ``limit`` bytes were read."""

    def __init__(self, data: bytes, victim: io.BytesIO, limit: int):
        super().__init__(data)
        self._victim = victim
        self._limit = limit
        self._count = 0

    def read(self, size=-1):
        chunk = super().read(size)
        self._count += len(chunk)
        if self._count > self._limit:
            self._victim.close()
        return chunk


class PipeReader(io.RawIOBase):
    """Readable stream that cannot seek, like a pipe."""

    def __init__(self, data: bytes):
        self._data = io.BytesIO(data)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def readinto(self, b) -> int:
        chunk = self._data.read(len(b))
        b[: len(chunk)] = chunk
        return len(chunk)


def test_output_closed_during_copy_raises_archive_io_error(tmp_path: Path) -> None:
    payload = bytes(random.Random(11).getrandbits(8) for _ in range(256 * 1024))
    src = write_archive(
        tmp_path / "big.zip",
        [(make_info("big.bin", compress_type=zipfile.ZIP_STORED), payload)],
    )
    dst = io.BytesIO()
    reader = ClosingReader(src.read_bytes(), dst, limit=64 * 1024)

    with pytest.raises(ArchiveIOError, match="closed during rewrite"):
        dz_rewrite.rewrite(reader, dst)
    assert dst.closed
    assert not reader.closed


def test_non_seekable_input_is_rejected(sample_jar: Path) -> None:
    dst = io.BytesIO()
    with pytest.raises(ArchiveIOError, match="must be seekable"):
        dz_rewrite.rewrite(PipeReader(sample_jar.read_bytes()), dst)
    assert dst.getvalue() == b""


def test_concurrent_rewrites_match_serial_output(tmp_path: Path) -> None:
    noise = bytes(random.Random(3).getrandbits(8) for _ in range(128 * 1024))
    sources = [
        write_archive(
            tmp_path / f"in{index}.jar",
            sample_entries(date_time, seconds) + [(make_info("lib/noise.bin", date_time), noise)],
        )
        for index, (date_time, seconds) in enumerate(
            [(LATER_TIME, LATER_SECONDS), ((2019, 11, 5, 23, 59, 58), 1573000798)]
        )
    ]

    serial = []
    for index, src in enumerate(sources):
        out = tmp_path / f"serial{index}.jar"
        dz_rewrite.rewrite(src, out)
        serial.append(out.read_bytes())

    outputs = [tmp_path / f"parallel{index}.jar" for index in range(len(sources))]
    with ThreadPoolExecutor(max_workers=len(sources)) as pool:
        results = list(pool.map(dz_rewrite.rewrite, sources, outputs))

    assert [r.entry_count for r in results] == [4, 4]
    assert [out.read_bytes() for out in outputs] == serial
    assert serial[0] == serial[1]


# =============================================================================
# Failures
# =============================================================================


def test_missing_input_raises_archive_io_error(tmp_path: Path) -> None:
    with pytest.raises(ArchiveIOError, match="Unable to open archive"):
        dz_rewrite.rewrite(tmp_path / "missing.jar", tmp_path / "out.jar")


def test_non_zip_input_raises_malformed(tmp_path: Path) -> None:
    bogus = tmp_path / "bogus.jar"
    bogus.write_bytes(b"this is not a zip archive at all")
    with pytest.raises(MalformedArchiveError):
        dz_rewrite.rewrite(bogus, tmp_path / "out.jar")


def test_corrupt_payload_raises_malformed(tmp_path: Path) -> None:
    src = write_archive(
        tmp_path / "corrupt.zip",
        [(make_info("data.txt", compress_type=zipfile.ZIP_STORED), b"A" * 5000)],
    )
    raw = bytearray(src.read_bytes())
    start = raw.find(b"A" * 100)
    raw[start : start + 100] = b"B" * 100
    src.write_bytes(bytes(raw))

    with pytest.raises(MalformedArchiveError):
        dz_rewrite.rewrite(src, tmp_path / "out.zip")


def test_encrypted_entry_raises_malformed(tmp_path: Path) -> None:
    src = write_archive(tmp_path / "enc.zip", [(make_info("secret.txt"), b"s")])
    raw = bytearray(src.read_bytes())
    central = raw.find(b"PK\x01\x02")
    raw[central + 8] |= 0x01
    src.write_bytes(bytes(raw))

    with pytest.raises(MalformedArchiveError, match="Encrypted"):
        dz_rewrite.rewrite(src, tmp_path / "out.zip")


def test_missing_output_directory_raises_archive_io_error(sample_jar: Path, tmp_path: Path) -> None:
    with pytest.raises(ArchiveIOError, match="Unable to create ZIP output stream"):
        dz_rewrite.rewrite(sample_jar, tmp_path / "no" / "such" / "out.jar")


def test_unknown_compression_rejected_before_io(sample_jar: Path, tmp_path: Path) -> None:
    out = tmp_path / "out.jar"
    with pytest.raises(ConfigurationError):
        dz_rewrite.rewrite(sample_jar, out, compression="xz")
    assert not out.exists()


# =============================================================================
# CLI
# =============================================================================


def test_main_rewrites_archive(sample_jar: Path, tmp_path: Path) -> None:
    out = tmp_path / "fixed.jar"
    assert dz_rewrite.main([str(sample_jar), str(out)]) == 0
    with zipfile.ZipFile(out) as zf:
        assert tuple(zf.namelist()) == EXPECTED_ORDER


def test_main_verbose_logs_entries(
    sample_jar: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert dz_rewrite.main([str(sample_jar), str(tmp_path / "fixed.jar"), "-v"]) == 0
    err = capsys.readouterr().err
    assert "Writing META-INF/MANIFEST.MF" in err
    assert "Entries: 3" in err


def test_main_usage_error_exits_2() -> None:
    with pytest.raises(SystemExit) as exc:
        dz_rewrite.main([])
    assert exc.value.code == 2


def test_main_same_file_is_rejected(sample_jar: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert dz_rewrite.main([str(sample_jar), str(sample_jar)]) == 2
    assert "must be different" in capsys.readouterr().err


def test_main_bad_input_returns_1(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    bogus = tmp_path / "bogus.jar"
    bogus.write_bytes(b"nope")
    assert dz_rewrite.main([str(bogus), str(tmp_path / "out.jar")]) == 1
    assert capsys.readouterr().err.startswith("Error: ")


def test_main_rejects_unknown_zip64_choice(sample_jar: Path, tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        dz_rewrite.main([str(sample_jar), str(tmp_path / "out.jar"), "--zip64", "always"])
    assert exc.value.code == 2
