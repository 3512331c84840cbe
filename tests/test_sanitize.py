"""Tests for sanitize.py."""

from audiobook_tools.sanitize import (
    clean_chapter_name,
    sanitize_chapter_title,
    sanitize_filename,
)


class TestSanitizeFilename:
    def test_unsafe_chars(self):
        assert sanitize_filename('a/b\\c:d"e*f?g<h>i|j') == "a_b_c_d_e_f_g_h_i_j"

    def test_leading_trailing_dots(self):
        assert sanitize_filename("..hidden..") == "hidden"

    def test_collapse_underscores(self):
        assert sanitize_filename("a::b") == "a_b"

    def test_long_name_truncated_keeping_extension(self):
        name = "x" * 300 + ".m4b"
        result = sanitize_filename(name)
        assert len(result.encode("utf-8")) <= 255
        assert result.endswith(".m4b")

    def test_multibyte_truncation(self):
        result = sanitize_filename("é" * 200 + ".m4b")
        assert len(result.encode("utf-8")) <= 255


class TestChapterTitles:
    def test_spaces_instead_of_underscores(self):
        assert sanitize_chapter_title("Part 1: The  Start") == "Part 1 The Start"

    def test_clean_chapter_name(self):
        assert clean_chapter_name("01_The-Beginning") == "The Beginning"
        assert clean_chapter_name("Chapter_12") == "Chapter"

    def test_only_digits(self):
        assert clean_chapter_name("0042") == ""
