"""Tests for load_config precedence and validation."""

import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from controller.config import load_config
from controller.errors import ConfigError

CREDS = {"CONTROLLER_RPC_USERNAME": "user", "CONTROLLER_RPC_PASSWORD": "pass"}


class TestDefaults:
    def test_env_only(self):
        config = load_config(env=dict(CREDS))
        assert config.daemon.host == "127.0.0.1"
        assert config.daemon.port == 18443
        assert config.daemon.username == "user"
        assert config.queue_depth == 16
        assert config.block_time == 0.0
        assert config.notify_url is None
        assert config.source_path is None

    def test_missing_credentials(self):
        with pytest.raises(ConfigError):
            load_config(env={})


class TestPrecedence:
    def test_file_then_env_then_overrides(self, tmp_path):
        path = tmp_path / "controller.json"
        path.write_text(
            json.dumps(
                {
                    "rpc_host": "bitcoind",
                    "rpc_port": 28443,
                    "rpc_username": "file-user",
                    "rpc_password": "file-pass",
                    "queue_depth": 3,
                    "block_time": 30,
                    "notify_url": "http://hooks/blocks",
                }
            )
        )
        env = {"CONTROLLER_QUEUE_DEPTH": "7", "CONTROLLER_RPC_PASSWORD": "env-pass"}
        config = load_config(path, env=env, overrides={"rpc_port": 38443, "block_time": None})

        assert config.daemon.host == "bitcoind"
        assert config.daemon.port == 38443
        assert config.daemon.username == "file-user"
        assert config.daemon.password == "env-pass"
        assert config.queue_depth == 7
        assert config.block_time == 30.0
        assert config.notify_url == "http://hooks/blocks"
        assert config.source_path == path.resolve()

    def test_config_path_from_env(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"poll_interval": 0.5}))
        config = load_config(env={**CREDS, "CONTROLLER_CONFIG_PATH": str(path)})
        assert config.poll_interval == 0.5


class TestCoercion:
    def test_invalid_values_fall_back(self):
        env = {
            **CREDS,
            "CONTROLLER_QUEUE_DEPTH": "lots",
            "CONTROLLER_POLL_INTERVAL": "-3",
            "CONTROLLER_BLOCK_TIME": "nan",
        }
        config = load_config(env=env)
        assert config.queue_depth == 16
        assert config.poll_interval == 0.05
        assert config.block_time == 0.0

    def test_truthy_flags(self):
        config = load_config(env={**CREDS, "CONTROLLER_RESPECT_IBD": "yes"})
        assert config.respect_ibd is True

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"blocktime": 5}))
        with pytest.raises(ConfigError):
            load_config(path, env=dict(CREDS))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.json", env=dict(CREDS))

    def test_non_object_file(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError):
            load_config(path, env=dict(CREDS))


class TestCommandLine:
    def test_bad_config_exits_2(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CONTROLLER_CONFIG_PATH", raising=False)
        from controller.__main__ import main

        assert main(["--config", str(tmp_path / "missing.json")]) == 2

    def test_flags_reach_uvicorn(self, monkeypatch):
        import uvicorn

        from controller.__main__ import main

        monkeypatch.delenv("CONTROLLER_CONFIG_PATH", raising=False)
        for key, value in CREDS.items():
            monkeypatch.setenv(key, value)
        seen = {}

        def fake_run(app, **kwargs):
            seen["app"] = app
            seen.update(kwargs)

        monkeypatch.setattr(uvicorn, "run", fake_run)
        assert main(["--port", "3100", "--rpc-port", "28443"]) == 0
        assert seen["port"] == 3100
        assert seen["host"] == "127.0.0.1"
        assert seen["app"].state.service.config.daemon.port == 28443

    def test_bind_failure_exits_1(self, monkeypatch):
        import uvicorn

        from controller.__main__ import main

        monkeypatch.delenv("CONTROLLER_CONFIG_PATH", raising=False)
        for key, value in CREDS.items():
            monkeypatch.setenv(key, value)

        def fake_run(app, **kwargs):
            raise SystemExit(1)

        monkeypatch.setattr(uvicorn, "run", fake_run)
        assert main([]) == 1


class TestLogging:
    @staticmethod
    def _detach(tree):
        for handler in list(tree.handlers):
            tree.removeHandler(handler)
            handler.close()

    def test_rotating_file(self, tmp_path):
        from controller.main import configure_logging

        log_file = tmp_path / "logs" / "controller.log"
        env = {
            "CONTROLLER_LOG_LEVEL": "debug",
            "CONTROLLER_LOG_FILE": str(log_file),
            "CONTROLLER_LOG_BACKUP_COUNT": "2",
        }
        tree = configure_logging(env, name="controller.file_logging_test")
        try:
            assert tree.level == logging.DEBUG
            files = [h for h in tree.handlers if isinstance(h, RotatingFileHandler)]
            assert len(files) == 1
            assert files[0].backupCount == 2
            tree.debug("tip at %d", 103)
            files[0].flush()
            assert "tip at 103" in log_file.read_text()
        finally:
            self._detach(tree)

    def test_unknown_level_falls_back_to_info(self):
        from controller.main import configure_logging

        tree = configure_logging({"LOG_LEVEL": "chatty"}, name="controller.level_test")
        try:
            assert tree.level == logging.INFO
            assert len(tree.handlers) == 1
        finally:
            self._detach(tree)
