"""
Tests for YAML settings loading.
"""
import textwrap

from config.settings import QueueConfig, load_settings


def _write(tmp_path, body: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.database.store_backend == "memory"
        assert settings.queue_backend.backend == "memory"
        assert settings.messaging.max_business_attempts is None
        assert settings.automation.base_url == ""

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_REDIS_URL", "redis://cache:6379/2")
        path = _write(tmp_path, """
            queue_backend:
              backend: redis
              redis_url: "${TEST_REDIS_URL}"
            automation:
              base_url: "${TEST_UNSET_CONTROLLER}"
        """)
        settings = load_settings(path)
        assert settings.queue_backend.redis_url == "redis://cache:6379/2"
        assert settings.queue_backend.key_prefix == "outreach"
        # unresolved variables are left as written
        assert settings.automation.base_url == "${TEST_UNSET_CONTROLLER}"

    def test_queue_overrides(self, tmp_path):
        path = _write(tmp_path, """
            queues:
              linkedin-messages:
                concurrency: 1
                rate_limit: {max: 2, duration: 60}
                attempts: 5
                stalled_timeout: 45
                retention:
                  completed_count: 10
        """)
        settings = load_settings(path)
        q = settings.queue_config("linkedin-messages")
        assert q.concurrency == 1
        assert q.rate_limit_max == 2
        assert q.rate_limit_duration == 60.0
        assert q.attempts == 5
        assert q.backoff_delay == 2.0
        assert q.stalled_timeout == 45.0
        assert q.retention.completed_count == 10
        assert q.retention.failed_age_days == 30

    def test_unconfigured_queue_falls_back(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.queue_config("enrichment") == QueueConfig()

    def test_messaging(self, tmp_path):
        path = _write(tmp_path, """
            messaging:
              max_business_attempts: 4
              requeue_interval: 10
            database:
              store_backend: sql
              url: sqlite:///./test.db
        """)
        settings = load_settings(path)
        assert settings.messaging.max_business_attempts == 4
        assert settings.messaging.requeue_interval == 10.0
        assert settings.messaging.requeue_batch_size == 100
        assert settings.messaging.processing_timeout == 600.0
        assert settings.database.store_backend == "sql"
        assert settings.database.url == "sqlite:///./test.db"
