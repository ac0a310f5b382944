"""Tests for formatting utilities."""

import pytest

from proc_ranker.formatting import format_bytes, format_cpu_time, truncate


class TestFormatBytes:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (0, "0B"),
            (512, "512B"),
            (1536, "1.5KB"),
            (5 * 1024 * 1024, "5.0MB"),
            (3 * 1024**3, "3.0GB"),
            (2 * 1024**4, "2.0TB"),
            (4096 * 1024**4, "4096.0TB"),
        ],
    )
    def test_units(self, value, expected):
        assert format_bytes(value) == expected


class TestFormatCpuTime:
    def test_milliseconds(self):
        assert format_cpu_time(850) == "850ms"

    def test_seconds(self):
        assert format_cpu_time(12_300) == "12.3s"

    def test_minutes(self):
        assert format_cpu_time(270_000) == "4.5m"


class TestTruncate:
    def test_short_text_unchanged(self):
        assert truncate("vim", 10) == "vim"

    def test_long_text_marked(self):
        assert truncate("/usr/lib/firefox/firefox", 10) == "/usr/lib.."
        assert len(truncate("/usr/lib/firefox/firefox", 10)) == 10

    def test_tiny_width(self):
        assert truncate("abcdef", 2) == "ab"
