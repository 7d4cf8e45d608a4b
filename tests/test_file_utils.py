"""Tests for filesystem helpers."""
import pytest

from video_uploader.utils.file_utils import (
    FileProcessor,
    get_file_size,
    is_safe_path_segment,
    is_within_directory,
    sanitize_filename,
)


class TestSanitizeFilename:

    @pytest.mark.parametrize("original, expected", [
        ("holiday.mp4", "holiday.mp4"),
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\me\\clip.mov", "clip.mov"),
        ("  spaced name.mp4  ", "spaced name.mp4"),
        ("tab\there.mp4", "tabhere.mp4"),
        ("dir/", "upload"),
        ("..", "upload"),
        ("", "upload"),
    ])
    def test_sanitize(self, original, expected):
        assert sanitize_filename(original) == expected

    def test_long_name_keeps_extension(self):
        name = sanitize_filename("a" * 500 + ".mp4")

        assert len(name) == 200
        assert name.endswith(".mp4")


class TestPathChecks:

    @pytest.mark.parametrize("value", ["up_abc", "upload_k3j9x2a1b", "a.b-c", "x" * 128])
    def test_safe_segments(self, value):
        assert is_safe_path_segment(value)

    @pytest.mark.parametrize("value", ["", ".", "..", "../x", "a/b", "a\\b", "x" * 129, "sp ace"])
    def test_unsafe_segments(self, value):
        assert not is_safe_path_segment(value)

    def test_is_within_directory(self, tmp_path):
        assert is_within_directory(tmp_path / "a" / "b", tmp_path)
        assert not is_within_directory(tmp_path / ".." / "other", tmp_path)
        assert not is_within_directory(tmp_path, tmp_path)


class TestFileProcessor:
    """Test directory maintenance helpers."""

    def test_purge_directory_contents(self, tmp_path):
        (tmp_path / "session").mkdir()
        (tmp_path / "session" / "chunk_0").write_bytes(b"x")
        (tmp_path / "stray").write_bytes(b"y")

        assert FileProcessor.purge_directory_contents(tmp_path) == 2
        assert tmp_path.is_dir()
        assert list(tmp_path.iterdir()) == []

    def test_purge_missing_directory(self, tmp_path):
        assert FileProcessor.purge_directory_contents(tmp_path / "absent") == 0

    def test_safe_remove_missing_path(self, tmp_path):
        assert FileProcessor.safe_remove(tmp_path / "absent") is False

    def test_iter_files_filters_suffix(self, tmp_path):
        (tmp_path / "a.partial").write_bytes(b"")
        (tmp_path / "b.mp4").write_bytes(b"")
        (tmp_path / "sub.partial").mkdir()

        assert [p.name for p in FileProcessor.iter_files(tmp_path, suffix=".partial")] == ["a.partial"]

    def test_get_file_size(self, tmp_path):
        path = tmp_path / "f"
        path.write_bytes(b"12345")
        assert get_file_size(path) == 5
