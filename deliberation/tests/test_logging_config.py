from deliberation.utils.logging_config import build_logging_config


def _settings(tmp_path, level="DEBUG"):
    return {
        "directory": str(tmp_path),
        "level": level,
        "max_bytes": 2048,
        "backup_count": 2,
    }


def test_audit_logger_writes_to_its_own_file(tmp_path):
    config = build_logging_config(_settings(tmp_path))

    audit = config["loggers"]["audit"]
    assert audit["handlers"] == ["console", "file_audit"]
    assert audit["propagate"] is False
    assert config["handlers"]["file_audit"]["filename"] == str(tmp_path / "audit.log")
    assert config["handlers"]["file_audit"]["formatter"] == "audit"


def test_rotation_settings_apply_to_every_file(tmp_path):
    config = build_logging_config(_settings(tmp_path))

    for name in ("file_app", "file_error", "file_audit"):
        handler = config["handlers"][name]
        assert handler["maxBytes"] == 2048
        assert handler["backupCount"] == 2
    assert config["handlers"]["file_error"]["level"] == "ERROR"


def test_configured_level_drives_application_logger(tmp_path):
    config = build_logging_config(_settings(tmp_path, level="WARNING"))

    assert config["loggers"]["deliberation"]["level"] == "WARNING"
    assert config["handlers"]["console"]["level"] == "WARNING"
    assert config["loggers"]["uvicorn.error"]["handlers"] == ["console", "file_error"]
