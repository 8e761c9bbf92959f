import itertools
from datetime import datetime, timedelta, timezone

import pytest

from storybook_mcp.storybook import (
    DEFAULT_IMAGE_MODEL,
    DEFAULT_STORY_MODEL,
    GAIC,
    Settings,
    StorybookGenerator,
)
from fakes import FakeGenAIClient


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run inside a scratch directory with no display and a private home."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("DISPLAY", raising=False)
    monkeypatch.delenv("XDG_DESKTOP_DIR", raising=False)
    (tmp_path / "home").mkdir()
    return tmp_path


@pytest.fixture
def settings(workdir):
    return Settings(api_key="test-key", auto_open=False)


@pytest.fixture
def clock():
    start = datetime(2025, 4, 1, 12, 30, 0, tzinfo=timezone.utc)
    ticks = itertools.count()
    return lambda: start + timedelta(milliseconds=next(ticks))


@pytest.fixture
def make_generator(settings, clock):
    """Build a generator whose Gemini client replays the given story/image chunks."""

    def factory(story_chunks, image_chunks, settings=settings):
        client = FakeGenAIClient({
            DEFAULT_STORY_MODEL: story_chunks,
            DEFAULT_IMAGE_MODEL: image_chunks,
        })
        generator = StorybookGenerator(settings, GAIC(settings, client=client), clock=clock)
        return generator, client

    return factory
