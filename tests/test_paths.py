"""
Output Location Tests
=====================
Desktop detection, output directory resolution and the persistence fallback.
"""
from pathlib import Path

import pytest

from storybook_mcp.storybook import (
    FALLBACK_SUBDIR,
    OUTPUT_SUBDIR,
    get_desktop_path,
    image_file_name,
    preview_file_name,
    resolve_output_directory,
    save_artifact,
    story_file_name,
)


class TestDesktopPath:

    def test_windows_userprofile(self, workdir, monkeypatch):
        profile = workdir / "profile"
        (profile / "Desktop").mkdir(parents=True)
        monkeypatch.setenv("USERPROFILE", str(profile))
        assert get_desktop_path("win32") == profile / "Desktop"

    def test_windows_missing_desktop_falls_back_to_home(self, workdir, monkeypatch):
        monkeypatch.setenv("USERPROFILE", str(workdir / "nobody"))
        assert get_desktop_path("win32") == Path.home()

    def test_mac_desktop_without_existence_check(self, workdir):
        assert get_desktop_path("darwin") == Path.home() / "Desktop"
        assert not (Path.home() / "Desktop").exists()

    def test_linux_xdg_desktop(self, workdir, monkeypatch):
        xdg = workdir / "xdg-desktop"
        xdg.mkdir()
        monkeypatch.setenv("XDG_DESKTOP_DIR", str(xdg))
        assert get_desktop_path("linux") == xdg

    def test_linux_xdg_missing_uses_home_desktop(self, workdir, monkeypatch):
        monkeypatch.setenv("XDG_DESKTOP_DIR", str(workdir / "gone"))
        (Path.home() / "Desktop").mkdir()
        assert get_desktop_path("linux") == Path.home() / "Desktop"

    def test_linux_without_desktop_uses_home(self, workdir):
        assert get_desktop_path("linux") == Path.home()


class TestResolveOutputDirectory:

    def test_working_directory_mode(self, workdir):
        directory = resolve_output_directory(False)
        assert directory == workdir / OUTPUT_SUBDIR
        assert directory.is_dir()

    def test_desktop_mode_is_idempotent(self, workdir):
        first = resolve_output_directory(True, platform="darwin")
        second = resolve_output_directory(True, platform="darwin")
        assert first == second == Path.home() / "Desktop" / OUTPUT_SUBDIR
        assert first.is_dir()

    def test_creation_failure_propagates(self, workdir):
        (workdir / OUTPUT_SUBDIR).write_text("not a directory")
        with pytest.raises(OSError):
            resolve_output_directory(False)


class TestSaveArtifact:

    def test_binary_and_text_payloads(self, workdir):
        image = save_artifact(b"\x00\x01png", "pic.png", False)
        story = save_artifact("Once upon a time ✨", "pic_story.txt", False)
        assert image == workdir / OUTPUT_SUBDIR / "pic.png"
        assert image.read_bytes() == b"\x00\x01png"
        assert story.read_text(encoding="utf-8") == "Once upon a time ✨"

    def test_overwrites_existing_file(self, workdir):
        save_artifact("first", "a_story.txt", False)
        path = save_artifact("second", "a_story.txt", False)
        assert path.read_text(encoding="utf-8") == "second"

    def test_falls_back_to_output_directory(self, workdir):
        (workdir / OUTPUT_SUBDIR).write_text("blocks the directory")
        path = save_artifact(b"data", "pic.png", False)
        assert path == workdir / FALLBACK_SUBDIR / "pic.png"
        assert path.read_bytes() == b"data"

    def test_second_failure_propagates(self, workdir):
        (workdir / OUTPUT_SUBDIR).write_text("blocks the directory")
        (workdir / FALLBACK_SUBDIR).write_text("blocks the fallback too")
        with pytest.raises(OSError):
            save_artifact("text", "a_story.txt", False)


class TestFileNames:

    def test_story_name_strips_extension(self):
        assert story_file_name("dragon1") == "dragon1_story.txt"
        assert story_file_name("dragon1.png") == "dragon1_story.txt"

    def test_image_name_gets_timestamp(self, clock):
        assert image_file_name("dragon1", clock()) == "dragon1_2025-04-01T12-30-00-000000Z.png"

    def test_image_name_kept_when_already_png(self, clock):
        assert image_file_name("cover.png", clock()) == "cover.png"

    def test_preview_name(self):
        assert preview_file_name("dragon1_2025.png") == "dragon1_2025_preview.html"
