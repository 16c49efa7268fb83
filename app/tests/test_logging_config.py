import os

from app.utils.logging_config import REALTIME_LOGGERS, _prune_backups, build_logging_config


def _config(monkeypatch, tmp_path, **env):
    for name in (
        "RETRO_LOG_LEVEL",
        "RETRO_REALTIME_LOG_LEVEL",
        "RETRO_SERVICES_LOG_LEVEL",
        "RETRO_CLIENT_LOG_LEVEL",
        "RETRO_SQL_ECHO",
    ):
        monkeypatch.delenv(name, raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    return build_logging_config(tmp_path, max_bytes=1024, backup_count=2)


def test_project_loggers_have_their_own_levels(monkeypatch, tmp_path):
    loggers = _config(monkeypatch, tmp_path)["loggers"]

    assert loggers["app"]["level"] == "DEBUG"
    assert loggers["app.services"]["level"] == "INFO"
    assert loggers["app.client"]["level"] == "WARNING"
    assert loggers["sqlalchemy.engine"]["level"] == "WARNING"
    assert loggers["audit"]["handlers"] == ["file_audit"]
    for name in REALTIME_LOGGERS:
        assert "file_realtime" in loggers[name]["handlers"]
        assert loggers[name]["propagate"] is False


def test_env_overrides_levels_and_ignores_garbage(monkeypatch, tmp_path):
    loggers = _config(
        monkeypatch,
        tmp_path,
        RETRO_LOG_LEVEL="warning",
        RETRO_REALTIME_LOG_LEVEL="debug",
        RETRO_CLIENT_LOG_LEVEL="chatty",
        RETRO_SQL_ECHO="1",
    )["loggers"]

    assert loggers["app"]["level"] == "WARNING"
    assert loggers["app.routers.realtime"]["level"] == "DEBUG"
    assert loggers["app.client"]["level"] == "WARNING"
    assert loggers["sqlalchemy.engine"]["level"] == "INFO"


def test_log_files_land_in_the_configured_directory(monkeypatch, tmp_path):
    handlers = _config(monkeypatch, tmp_path)["handlers"]

    assert handlers["file_realtime"]["filename"] == str(tmp_path / "realtime.log")
    assert handlers["file_audit"]["filename"] == str(tmp_path / "audit.log")
    assert handlers["file_error"]["level"] == "ERROR"


def test_prune_backups_keeps_the_newest(tmp_path):
    for index in range(4):
        backup = tmp_path / f"app.log.{index}"
        backup.write_text("x", encoding="utf-8")
        os.utime(backup, (1000 + index, 1000 + index))

    _prune_backups(tmp_path, "app.log", 2)

    assert sorted(path.name for path in tmp_path.iterdir()) == ["app.log.2", "app.log.3"]
