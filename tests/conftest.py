"""Shared test fixtures for the media-cache test suite."""

import json
import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mediacache.config import ConfigManager  # noqa: E402
from mediacache.system_utils import ConcurrencyGuard  # noqa: E402

KB = 1024


def create_test_file(path, content="test content", size_bytes=None):
    """Create a test file with given content or specific size.

    Args:
        path: Full path to create file at.
        content: Text content to write (ignored if size_bytes set).
        size_bytes: If set, create file of exactly this size.

    Returns:
        The path of the created file.
    """
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if size_bytes is not None:
        with open(path, 'wb') as f:
            f.write(b'\x00' * size_bytes)
    else:
        with open(path, 'w') as f:
            f.write(content)
    return path


# ============================================================================
# Filesystem fixtures
# ============================================================================

@pytest.fixture
def media_env(tmp_path):
    """Provide a library root, cache root and state folders under tmp_path."""
    library = tmp_path / "nas"
    for folder in ("movies", "tv", "doc", "downloads"):
        (library / folder).mkdir(parents=True)
    cache = tmp_path / "ssd" / "media-cache"
    cache.mkdir(parents=True)
    return {
        "root": str(tmp_path),
        "library": str(library),
        "cache": str(cache),
        "data": str(tmp_path / "state" / "data"),
        "logs": str(tmp_path / "state" / "logs"),
        "locks": str(tmp_path / "locks"),
    }


# Every category scanned by size, no age/size filters, and only tv owned
# by popular-sweep unless a test says otherwise.
def _test_categories():
    categories = {}
    for name in ("popular", "movies", "tv", "recent", "doc", "downloads"):
        categories[name] = {
            "budget": "100KB", "retention_days": 30, "max_file_size": "0",
            "min_file_size": "0", "max_age_days": 0, "ranking": "size",
            "max_entries": 0, "job": "recent-sweep",
        }
    categories["tv"]["job"] = "popular-sweep"
    categories["tv"]["source_folders"] = ["tv"]
    categories["recent"]["source_folders"] = ["movies"]
    return categories


def _settings(media_env, categories=None, **overrides):
    settings = {
        "cache_dir": media_env["cache"],
        "library_root": media_env["library"],
        "data_folder": media_env["data"],
        "logs_folder": media_env["logs"],
        "lock_dir": media_env["locks"],
        "require_mountpoint": False,
        "categories": _test_categories(),
    }
    for name, values in (categories or {}).items():
        settings["categories"][name].update(values)
    settings.update(overrides)
    return settings


@pytest.fixture
def make_config(media_env):
    """Factory building a loaded ConfigManager; keyword args override settings."""

    def _make(categories=None, **overrides):
        config = ConfigManager(os.path.join(media_env["root"], "unused_settings.json"))
        config.load_dict(_settings(media_env, categories, **overrides))
        return config

    return _make


@pytest.fixture
def settings_file(media_env):
    """Factory writing a settings file to disk and returning its path."""

    def _write(categories=None, **overrides):
        path = os.path.join(media_env["root"], "media_cache_settings.json")
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(_settings(media_env, categories, **overrides), f, indent=2)
        return path

    return _write


@pytest.fixture
def guard(media_env):
    """Provide a ConcurrencyGuard over the test lock directory."""
    g = ConcurrencyGuard(media_env["locks"])
    yield g
    g.release_all()


@pytest.fixture
def other_guard(media_env):
    """A second guard over the same lock directory, standing in for another process."""
    g = ConcurrencyGuard(media_env["locks"])
    yield g
    g.release_all()
