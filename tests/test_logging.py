from __future__ import annotations

import logging

import pytest

from pixelforge_shared.logging import configure_logging


class TestConfigureLogging:
    def test_http_client_loggers_are_kept_at_warning(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("FORGE_LOG_LEVEL", raising=False)
        configure_logging("DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_env_level_overrides_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FORGE_LOG_LEVEL", "error")
        configure_logging("INFO")
        assert logging.getLogger("httpx").level == logging.ERROR
