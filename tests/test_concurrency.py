"""Tests for concurrency.py -- disk space pre-flight."""

from collections import namedtuple
from unittest.mock import patch

from audiobook_tools.concurrency import check_disk_space, required_bytes

Usage = namedtuple("Usage", "total used free")


class TestRequiredBytes:
    def test_files_and_dirs(self, tmp_path):
        a = tmp_path / "a.mp3"
        a.write_bytes(b"x" * 100)
        folder = tmp_path / "book"
        folder.mkdir()
        (folder / "01.mp3").write_bytes(b"x" * 50)
        assert required_bytes([a, folder], multiplier=2) == 300

    def test_missing_source_counts_zero(self, tmp_path):
        assert required_bytes([tmp_path / "nope.mp3"]) == 0


class TestCheckDiskSpace:
    @patch("audiobook_tools.concurrency.shutil.disk_usage")
    def test_sufficient(self, mock_usage, tmp_path):
        src = tmp_path / "a.mp3"
        src.write_bytes(b"x" * 100)
        mock_usage.return_value = Usage(1000, 0, 200)
        assert check_disk_space(src, tmp_path) is True

    @patch("audiobook_tools.concurrency.shutil.disk_usage")
    def test_insufficient(self, mock_usage, tmp_path):
        src = tmp_path / "a.mp3"
        src.write_bytes(b"x" * 100)
        mock_usage.return_value = Usage(1000, 0, 199)
        assert check_disk_space([src], tmp_path) is False

    @patch("audiobook_tools.concurrency.shutil.disk_usage")
    def test_missing_dest_uses_existing_parent(self, mock_usage, tmp_path):
        mock_usage.return_value = Usage(1000, 0, 1000)
        check_disk_space([], tmp_path / "not" / "yet")
        mock_usage.assert_called_once_with(tmp_path)
