"""Tests for configuration module."""

import pytest
from pathlib import Path

from tailor.config import TailorConfig


class TestTailorConfig:
    """Tests for TailorConfig class."""

    def test_default_config(self):
        config = TailorConfig()

        assert config.encoding == "utf-8"
        assert config.encoding_errors == "replace"
        assert config.use_polling is False
        assert config.active_poll_ms == 100
        assert config.standby_poll_ms == 2000
        assert config.recursive is False
        assert config.backfill_existing is False
        assert config.max_fragment_bytes is None
        assert config.max_watches is None

    def test_custom_config(self):
        config = TailorConfig(
            use_polling=True,
            poll_interval_ms=250,
            recursive=True,
            max_watches=5,
        )

        assert config.use_polling is True
        assert config.poll_interval_ms == 250
        assert config.recursive is True
        assert config.max_watches == 5

    def test_invalid_poll_interval(self):
        with pytest.raises(ValueError):
            TailorConfig(active_poll_ms=0)

    def test_active_exceeds_standby(self):
        with pytest.raises(ValueError):
            TailorConfig(active_poll_ms=500, standby_poll_ms=100)

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            TailorConfig(max_batch_lines=0)

    def test_ignore_patterns_not_shared(self):
        a = TailorConfig()
        b = TailorConfig()
        a.ignore_patterns.append("*.gz")

        assert "*.gz" not in b.ignore_patterns


class TestShouldIgnore:
    """Tests for TailorConfig.should_ignore."""

    def test_regular_file(self):
        config = TailorConfig()
        assert not config.should_ignore(Path("/logs/app.log"))

    def test_hidden_file(self):
        config = TailorConfig()
        assert config.should_ignore(Path("/logs/.app.log"))

    def test_hidden_allowed(self):
        config = TailorConfig(ignore_hidden=False)
        assert not config.should_ignore(Path("/logs/.app.log"))

    def test_editor_files(self):
        config = TailorConfig()

        assert config.should_ignore(Path("/logs/app.log.swp"))
        assert config.should_ignore(Path("/logs/app.log~"))
        assert config.should_ignore(Path("/logs/upload.tmp"))

    def test_custom_patterns(self):
        config = TailorConfig(ignore_patterns=["*.gz"])

        assert config.should_ignore(Path("/logs/app.log.1.gz"))
        assert not config.should_ignore(Path("/logs/app.log.swp"))


class TestFromEnv:
    """Tests for TailorConfig.from_env."""

    def test_no_env(self, monkeypatch):
        monkeypatch.delenv("TAILOR_USE_POLLING", raising=False)

        config = TailorConfig.from_env()

        assert config.use_polling is False

    def test_bool_and_int(self, monkeypatch):
        monkeypatch.setenv("TAILOR_USE_POLLING", "true")
        monkeypatch.setenv("TAILOR_POLL_INTERVAL_MS", "300")
        monkeypatch.setenv("TAILOR_RECURSIVE", "0")

        config = TailorConfig.from_env()

        assert config.use_polling is True
        assert config.poll_interval_ms == 300
        assert config.recursive is False

    def test_optional_int(self, monkeypatch):
        monkeypatch.setenv("TAILOR_MAX_WATCHES", "7")
        monkeypatch.setenv("TAILOR_MAX_FRAGMENT_BYTES", "")

        config = TailorConfig.from_env()

        assert config.max_watches == 7
        assert config.max_fragment_bytes is None

    def test_patterns_and_float(self, monkeypatch):
        monkeypatch.setenv("TAILOR_IGNORE_PATTERNS", "*.gz, *.bak")
        monkeypatch.setenv("TAILOR_STOP_TIMEOUT_S", "1.5")

        config = TailorConfig.from_env()

        assert config.ignore_patterns == ["*.gz", "*.bak"]
        assert config.stop_timeout_s == 1.5

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("TAILOR_USE_POLLING", "1")

        config = TailorConfig.from_env(use_polling=False)

        assert config.use_polling is False

    def test_custom_prefix(self, monkeypatch):
        monkeypatch.setenv("MYAPP_ENCODING", "latin-1")

        config = TailorConfig.from_env(prefix="MYAPP_")

        assert config.encoding == "latin-1"

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("TAILOR_ACTIVE_POLL_MS", "fast")

        with pytest.raises(ValueError):
            TailorConfig.from_env()
