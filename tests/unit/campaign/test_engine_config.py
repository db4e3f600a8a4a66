"""
Unit Tests: Engine Configuration

Tests environment loading of the engine tunables and infrastructure
settings.
"""

from core.config import AppConfig, EngineConfig, InfraConfig


class TestEngineConfig:
    """EngineConfig.from_env"""

    def test_defaults(self, monkeypatch):
        for name in ("DISPATCH_BATCH_SIZE", "INGEST_DEDUP_WINDOW", "ATTRIBUTION_WINDOW_DAYS"):
            monkeypatch.delenv(name, raising=False)

        config = EngineConfig.from_env()

        assert config.batch_size == 1000
        assert config.dedup_window_size == 100000
        assert config.attribution_window_days == 7

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DISPATCH_BATCH_SIZE", "250")
        monkeypatch.setenv("DISPATCH_FAILURE_RATIO", "0.25")
        monkeypatch.setenv("SEGMENT_REFRESH_PARALLELISM", "1")

        config = EngineConfig.from_env()

        assert config.batch_size == 250
        assert config.failure_ratio_threshold == 0.25
        assert config.refresh_parallelism == 1

    def test_malformed_value_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("DISPATCH_MAX_ATTEMPTS", "three")

        assert EngineConfig.from_env().max_send_attempts == 3


class TestInfraConfig:
    """InfraConfig.from_env"""

    def test_nats_url_from_host_and_port(self, monkeypatch):
        monkeypatch.delenv("NATS_URL", raising=False)
        monkeypatch.setenv("NATS_HOST", "nats.internal")
        monkeypatch.setenv("NATS_PORT", "4333")

        assert InfraConfig.from_env().resolved_nats_url == "nats://nats.internal:4333"

    def test_stream_subjects_from_env(self, monkeypatch):
        monkeypatch.setenv("EVENT_STREAM_SUBJECTS", "email.>, customer.>")

        assert InfraConfig.from_env().event_stream_subjects == ["email.>", "customer.>"]

    def test_app_config_combines_sub_configs(self, monkeypatch):
        monkeypatch.setenv("PORT", "9100")

        config = AppConfig.from_env()

        assert config.default_port == 9100
        assert isinstance(config.engine, EngineConfig)
