"""Tests for the archive entry state machine."""

from __future__ import annotations

import logging
import stat
from pathlib import Path

import pytest

from paccat.Config import Behavior, Options
from paccat.EntryStream import EntryState, EntryStreamProcessor, is_binary
from paccat.Errors import DecodeError
from paccat.Matcher import Matcher
from paccat.Output import OutputRouter
from paccat.Protocols import ArchiveEntry, DataChunk, EntryEnd, EntryStart
from paccat.TarArchive import TarArchiveDecoder

from .conftest import ListDecoder, dir_events, file_events


def make_processor(patterns, archives, stdout, *, regex=False, pager=None, destination=None, **options):
    options.setdefault("binary_allowed", True)
    matcher = Matcher(patterns, regex=regex)
    router = OutputRouter(stdout, pager=pager)
    processor = EntryStreamProcessor(matcher, router, ListDecoder(archives), Options(regex=regex, **options),
                                     destination=destination)
    return processor, matcher


class TestBinaryDetection:
    def test_nul_in_sniffed_prefix_is_binary(self):
        assert is_binary(b"ELF\x00\x01")

    def test_printable_ascii_is_text(self):
        assert not is_binary(b"hello world\n" * 100)

    def test_nul_after_sniffed_prefix_is_text(self):
        assert not is_binary(b"a" * 512 + b"\x00")


class TestPrint:
    def test_prints_matched_content(self, stdout):
        archives = {"p1": file_events("usr/a.txt", b"hello ", b"world") + file_events("usr/c.txt", b"nope")}
        processor, matcher = make_processor(["a.txt"], archives, stdout)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b"hello world"
        assert matcher.all_matched()

    def test_partial_match_leaves_pattern_open(self, stdout):
        archives = {"p1": file_events("a.txt", b"A") + file_events("c.txt", b"C")}
        processor, matcher = make_processor(["a.txt", "b.txt"], archives, stdout)
        processor.scan(Path("p1"))
        assert matcher.matched == {0}
        assert not matcher.all_matched()

    def test_first_occurrence_only(self, stdout):
        archives = {"p1": file_events("x/a.txt", b"1") + file_events("y/a.txt", b"2")}
        processor, _ = make_processor(["a.txt"], archives, stdout)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b"1"

    def test_all_occurrences(self, stdout):
        archives = {"p1": file_events("x/a.txt", b"1") + file_events("y/a.txt", b"2")}
        processor, _ = make_processor(["a.txt"], archives, stdout, all=True)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b"12"

    def test_regex_accumulates_matches(self, stdout):
        archives = {"p1": file_events("lib.so", b"a") + file_events("lib.so.1", b"b")}
        processor, matcher = make_processor([r"lib.*\.so"], archives, stdout, regex=True, all=True)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b"ab"
        assert matcher.all_matched()

    def test_non_regular_entries_are_skipped(self, stdout):
        symlink = ArchiveEntry("usr/lib/a.txt", stat.S_IFLNK | 0o777)
        archives = {"p1": dir_events("a.txt") + [EntryStart(symlink), EntryEnd()]}
        processor, matcher = make_processor(["a.txt"], archives, stdout)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b""
        assert not matcher.all_matched()

    def test_executable_filter(self, stdout):
        archives = {
            "p1": file_events("usr/share/tool", b"data") + file_events("usr/bin/tool", b"script", mode=0o755)
        }
        processor, _ = make_processor(["tool"], archives, stdout, executable=True)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b"script"

    def test_ledger_spans_archives(self, stdout):
        archives = {"p1": file_events("a.txt", b"A"), "p2": file_events("b.txt", b"B")}
        processor, matcher = make_processor(["a.txt", "b.txt"], archives, stdout)
        processor.scan(Path("p1"))
        assert not matcher.all_matched()
        processor.scan(Path("p2"))
        assert matcher.all_matched()
        assert stdout.getvalue() == b"AB"

    def test_state_returns_to_skip_after_entry(self, stdout):
        processor, _ = make_processor(["a.txt"], {}, stdout)
        entry = ArchiveEntry("a.txt", stat.S_IFREG | 0o644)
        state = processor.transition(EntryState.SKIP, EntryStart(entry))
        assert state is EntryState.FIRST_CHUNK
        state = processor.transition(state, DataChunk(b"x"))
        assert state is EntryState.READING
        state = processor.transition(state, EntryEnd())
        assert state is EntryState.SKIP


class TestBinaryHandling:
    def test_binary_skipped_on_terminal(self, stdout, caplog):
        archives = {"p1": file_events("usr/bin/tool", b"\x7fELF\x00\x00", b"more")}
        processor, matcher = make_processor(["tool"], archives, stdout, binary_allowed=False)
        with caplog.at_level(logging.WARNING):
            processor.scan(Path("p1"))
        assert stdout.getvalue() == b""
        assert "usr/bin/tool is a binary file" in caplog.text
        # the entry still counts as found
        assert matcher.all_matched()

    def test_binary_written_when_allowed(self, stdout):
        archives = {"p1": file_events("tool", b"\x00\x01", b"\x02")}
        processor, _ = make_processor(["tool"], archives, stdout, binary_allowed=True)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b"\x00\x01\x02"

    def test_binary_falls_back_from_pager(self, stdout, tmp_path):
        paged = tmp_path / "paged"
        pager = lambda path: ["sh", "-c", f"cat > '{paged}'"]
        archives = {"p1": file_events("tool", b"\x00bin")}
        processor, _ = make_processor(["tool"], archives, stdout, pager=pager, binary_allowed=True)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b"\x00bin"
        assert paged.read_bytes() == b""

    def test_text_goes_through_pager(self, stdout, tmp_path):
        paged = tmp_path / "paged"
        pager = lambda path: ["sh", "-c", f"cat > '{paged}'"]
        archives = {"p1": file_events("etc/a.conf", b"key=value\n")}
        processor, _ = make_processor(["a.conf"], archives, stdout, pager=pager)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b""
        assert paged.read_bytes() == b"key=value\n"


class TestListAndExtract:
    def test_list_prints_paths_only(self, stdout):
        archives = {"p1": file_events("usr/a.txt", b"A") + file_events("usr/b.txt", b"B")}
        processor, _ = make_processor(["*"], archives, stdout, all=True, behavior=Behavior.LIST)
        processor.scan(Path("p1"))
        assert stdout.getvalue() == b"usr/a.txt\nusr/b.txt\n"

    def test_extract_round_trip(self, stdout, tmp_path):
        archives = {"p1": file_events("usr/bin/tool", b"#!/bin/sh\n", b"echo hi\n", mode=0o750)}
        processor, _ = make_processor(["tool"], archives, stdout, behavior=Behavior.EXTRACT,
                                      destination=tmp_path)
        processor.scan(Path("p1"))
        target = tmp_path / "usr" / "bin" / "tool"
        assert target.read_bytes() == b"#!/bin/sh\necho hi\n"
        assert stat.S_IMODE(target.stat().st_mode) == 0o750
        assert stdout.getvalue() == b"usr/bin/tool\n"

    def test_extract_keeps_binary(self, stdout, tmp_path):
        archives = {"p1": file_events("lib.so", b"\x00\x01\x02")}
        processor, _ = make_processor(["lib.so"], archives, stdout, behavior=Behavior.EXTRACT,
                                      destination=tmp_path, binary_allowed=False)
        processor.scan(Path("p1"))
        assert (tmp_path / "lib.so").read_bytes() == b"\x00\x01\x02"

    def test_extract_empty_file(self, stdout, tmp_path):
        archives = {"p1": file_events("etc/empty")}
        processor, _ = make_processor(["empty"], archives, stdout, behavior=Behavior.INSTALL,
                                      destination=tmp_path)
        processor.scan(Path("p1"))
        assert (tmp_path / "etc" / "empty").read_bytes() == b""


class TestErrors:
    def test_decode_error_aborts_after_earlier_output(self, stdout):
        archives = {"p1": file_events("a.txt", b"A") + [DecodeError("failed to read p1")]}
        processor, _ = make_processor(["*"], archives, stdout, all=True)
        with pytest.raises(DecodeError):
            processor.scan(Path("p1"))
        assert stdout.getvalue() == b"A"
        assert processor.router.sink is None


class TestWithTarArchives:
    def test_scan_real_archive(self, make_archive, stdout):
        archive = make_archive(
            "demo-1.0-1-any.pkg.tar.gz",
            {".PKGINFO": b"pkgname = demo\n", "usr/share/demo/a.txt": b"alpha\n", "usr/share/demo/c.txt": b"c\n"},
            dirs=["usr/", "usr/share/", "usr/share/demo/"],
            symlinks={"usr/share/demo/b.txt": "a.txt"},
        )
        matcher = Matcher(["a.txt", "b.txt"])
        processor = EntryStreamProcessor(matcher, OutputRouter(stdout), TarArchiveDecoder(),
                                         Options(binary_allowed=True))
        processor.scan(archive)
        assert stdout.getvalue() == b"alpha\n"
        assert not matcher.all_matched()

    def test_uncompressed_archive(self, make_archive, stdout):
        archive = make_archive("plain.pkg.tar", {"a.txt": b"plain"}, compression="")
        matcher = Matcher(["a.txt"])
        processor = EntryStreamProcessor(matcher, OutputRouter(stdout), TarArchiveDecoder(),
                                         Options(binary_allowed=True))
        processor.scan(archive)
        assert stdout.getvalue() == b"plain"

    def test_corrupt_archive(self, tmp_path, stdout):
        broken = tmp_path / "broken.pkg.tar.gz"
        broken.write_bytes(b"\x1f\x8b" + b"garbage" * 10)
        processor = EntryStreamProcessor(Matcher(["*"]), OutputRouter(stdout), TarArchiveDecoder(), Options())
        with pytest.raises(DecodeError, match="broken.pkg.tar.gz"):
            processor.scan(broken)

    def test_zstd_archive(self, make_archive, stdout):
        archive = make_archive(
            "demo-1.0-1-x86_64.pkg.tar.zst",
            {".PKGINFO": b"pkgname = demo\n", "usr/share/demo/a.txt": b"zstd content\n"},
            dirs=["usr/", "usr/share/", "usr/share/demo/"],
            compression="zst",
        )
        matcher = Matcher(["a.txt"])
        processor = EntryStreamProcessor(matcher, OutputRouter(stdout), TarArchiveDecoder(),
                                         Options(binary_allowed=True))
        processor.scan(archive)
        assert stdout.getvalue() == b"zstd content\n"
        assert matcher.all_matched()

    def test_corrupt_zstd_archive(self, tmp_path, stdout):
        broken = tmp_path / "broken.pkg.tar.zst"
        broken.write_bytes(b"\x28\xb5\x2f\xfd" + b"garbage" * 10)
        processor = EntryStreamProcessor(Matcher(["*"]), OutputRouter(stdout), TarArchiveDecoder(), Options())
        with pytest.raises(DecodeError, match="broken.pkg.tar.zst"):
            processor.scan(broken)
