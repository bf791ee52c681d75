"""
Tests for import_relay/core/config.py - settings, env normalization and dotenv loading.
"""

from __future__ import annotations

import logging
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from import_relay.core.config import Settings, get_settings, load_environment
from tests.helpers import make_settings


class TestDefaults:
    def test_defaults_match_deployment(self):
        s = make_settings(RETRY_BACKOFF_SECONDS=5.0)

        assert s.RETRY_ATTEMPTS == 3
        assert s.RETRY_BACKOFF_SECONDS == 5.0
        assert s.CONSUMER_CONCURRENCY == 1
        assert s.IMPORT_DEAD_LETTER_TOPIC is None
        assert s.grpc_target == "localhost:9090"
        assert s.is_production is False

    def test_reads_environment(self):
        env = {
            "KAFKA_BOOTSTRAP_SERVERS": "k1:9092,k2:9092",
            "IMPORT_REQUESTS_TOPIC": "req",
            "IMPORT_FAILURES_TOPIC": "fail",
            "CONSUMER_CONCURRENCY": "4",
            "retry_attempts": "5",
        }
        with patch.dict(os.environ, env, clear=True):
            s = Settings(_env_file=None)  # type: ignore[call-arg]

        assert s.KAFKA_BOOTSTRAP_SERVERS == "k1:9092,k2:9092"
        assert s.IMPORT_REQUESTS_TOPIC == "req"
        assert s.IMPORT_FAILURES_TOPIC == "fail"
        assert s.CONSUMER_CONCURRENCY == 4
        assert s.RETRY_ATTEMPTS == 5


class TestValidation:
    def test_normalizes_production_to_prod(self, caplog):
        with caplog.at_level(logging.WARNING):
            s = make_settings(ENVIRONMENT="production")

        assert s.ENVIRONMENT == "prod"
        assert s.is_production is True
        assert "deprecated" in caplog.text

    def test_normalizes_development_to_dev(self):
        assert make_settings(ENVIRONMENT="Development").ENVIRONMENT == "dev"

    def test_log_level_is_upper_cased(self):
        assert make_settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    def test_blank_dead_letter_topic_is_none(self):
        assert make_settings(IMPORT_DEAD_LETTER_TOPIC="  ").IMPORT_DEAD_LETTER_TOPIC is None

    @pytest.mark.parametrize(
        "overrides",
        [
            {"CONSUMER_CONCURRENCY": 0},
            {"RETRY_ATTEMPTS": -1},
            {"IMPORT_GRPC_PORT": 70000},
            {"KAFKA_MAX_POLL_INTERVAL_MS": 1000},
            {"ENVIRONMENT": "qa"},
        ],
    )
    def test_rejects_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            make_settings(**overrides)


class TestKafkaConfig:
    def test_consumer_commits_manually(self):
        config = make_settings(KAFKA_GROUP_ID="g").kafka_consumer_config()

        assert config["group.id"] == "g"
        assert config["enable.auto.commit"] is False
        assert config["auto.offset.reset"] == "earliest"

    def test_producer_is_idempotent(self):
        assert make_settings().kafka_producer_config()["enable.idempotence"] is True


class TestLoadEnvironment:
    def test_loads_dotenv_without_overriding_exports(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("IMPORT_REQUESTS_TOPIC=from-file\nIMPORT_GRPC_PORT=9555\n", encoding="utf-8")

        with patch.dict(os.environ, {"IMPORT_GRPC_PORT": "9999"}, clear=True):
            count = load_environment(env_file)
            s = get_settings()

        assert count == 1
        assert s.IMPORT_REQUESTS_TOPIC == "from-file"
        assert s.IMPORT_GRPC_PORT == 9999

    def test_override(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("IMPORT_GRPC_PORT=9555\n", encoding="utf-8")

        with patch.dict(os.environ, {"IMPORT_GRPC_PORT": "9999"}, clear=True):
            load_environment(env_file, override=True)
            port = os.environ["IMPORT_GRPC_PORT"]

        assert port == "9555"

    def test_missing_file_is_not_an_error(self, tmp_path):
        with patch.dict(os.environ, {}, clear=True):
            assert load_environment(tmp_path / "absent.env") == 0

    def test_env_file_variable(self, tmp_path):
        env_file = tmp_path / "relay.env"
        env_file.write_text("KAFKA_GROUP_ID=from-var\n", encoding="utf-8")

        with patch.dict(os.environ, {"IMPORT_RELAY_ENV_FILE": str(env_file)}, clear=True):
            load_environment()
            group = get_settings().KAFKA_GROUP_ID

        assert group == "from-var"

    def test_settings_are_cached(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_settings() is get_settings()
