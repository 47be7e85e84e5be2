import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest
from pydantic import ValidationError

from storeflow.config import Settings
from storeflow.logger import setup_logger


def test_settings_from_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STOREFLOW_DATA_PATH", str(tmp_path / "data.json"))
    monkeypatch.setenv("STOREFLOW_ALLOWED_EMAIL_DOMAIN", "@Example.ORG")
    monkeypatch.setenv("STOREFLOW_LOG_LEVEL", "debug")
    monkeypatch.setenv("STOREFLOW_RESEND_COOLDOWN_SECONDS", "5")

    settings = Settings()
    assert settings.data_path == tmp_path / "data.json"
    assert settings.allowed_email_domain == "@example.org"
    assert settings.log_level == "DEBUG"
    assert settings.resend_cooldown_seconds == 5
    assert settings.verification_code == "123456"
    assert settings.sync_root is None


def test_settings_validation() -> None:
    with pytest.raises(ValidationError):
        Settings(allowed_email_domain="cavitak.com")
    with pytest.raises(ValidationError):
        Settings(log_level="chatty")
    with pytest.raises(ValidationError):
        Settings(environment="staging")


def test_setup_logger_writes_rotating_file(tmp_path: Path) -> None:
    logger = setup_logger("storeflow.test_logger", log_level=logging.INFO, log_dir=tmp_path / "logs")
    try:
        assert any(isinstance(handler, RotatingFileHandler) for handler in logger.handlers)
        assert setup_logger("storeflow.test_logger", log_dir=tmp_path / "logs") is logger
        assert len(logger.handlers) == 2

        logger.info("stock imported")
        for handler in logger.handlers:
            handler.flush()
        assert "stock imported" in (tmp_path / "logs" / "storeflow.log").read_text(encoding="utf-8")
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
