"""Tests for config.ini loading."""

import pytest

from longbox.config import load_config, write_default_config


def test_default_config_loads(tmp_path):
    config_path = tmp_path / "config.ini"
    write_default_config(config_path, tmp_path / "comics", "Home")

    config = load_config(config_path)

    assert config.library.name == "Home"
    assert config.library_path == tmp_path / "comics"
    assert config.server_port == 8080
    assert config.scanner.batch_size == 50
    assert config.queue.max_size == 20
    assert config.queue.pending_ttl_minutes == 30
    assert "@eaDir" in config.scanner.ignore_patterns
    assert config.database_path == tmp_path / "longbox.db"
    assert config.covers_dir == tmp_path / "covers"


def test_missing_sections_fall_back_to_defaults(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[library]\npath = /srv/comics\n")

    config = load_config(config_path)

    assert config.library.name == "My Comic Library"
    assert config.archive.listing_cache_size == 500
    assert config.covers.width == 300


def test_invalid_batch_size(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[library]\npath = /srv/comics\n[scanner]\nbatch_size = 0\n")
    with pytest.raises(ValueError):
        load_config(config_path)


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "config.ini")
