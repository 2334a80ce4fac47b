"""Tests for the YAML settings loader."""
from config.settings import DEFAULT_SLOTS, Settings, load_settings


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings == Settings()
    assert settings.queue.backend == "memory"
    assert settings.worker.min_delivery_interval == 3.0
    assert settings.schedule.slots == DEFAULT_SLOTS


def test_bundled_file_loads():
    settings = load_settings()
    assert settings.queue.notification_queue == "email-notifications"
    assert settings.queue.dead_letter_queue == "email-dlq"
    assert settings.queue.event_queue == "email-events"
    assert settings.queue.max_attempts == 3
    assert settings.delivery.provider == "log"


def test_overrides_and_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_from_env")
    path = tmp_path / "settings.yaml"
    path.write_text(
        "frontend_url: https://example.test\n"
        "queue:\n"
        "  backend: redis\n"
        "  redis_url: redis://cache:6379/2\n"
        "  not_a_field: ignored\n"
        "worker:\n"
        "  min_delivery_interval: 0.5\n"
        "delivery:\n"
        "  provider: resend\n"
        "  api_key: ${RESEND_API_KEY}\n"
        "schedule:\n"
        "  timezone: Europe/Berlin\n"
        "  slots:\n"
        "    saturday: ['11:00']\n"
    )
    settings = load_settings(str(path))

    assert settings.frontend_url == "https://example.test"
    assert settings.queue.backend == "redis"
    assert settings.queue.redis_url == "redis://cache:6379/2"
    assert settings.queue.max_attempts == 3
    assert settings.worker.min_delivery_interval == 0.5
    assert settings.worker.poll_timeout == 1.0
    assert settings.delivery.api_key == "re_from_env"
    assert settings.schedule.timezone == "Europe/Berlin"
    assert settings.schedule.slots == {"saturday": ["11:00"]}


def test_unset_env_var_left_in_place(tmp_path, monkeypatch):
    monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text("delivery:\n  api_key: ${NOT_SET_ANYWHERE}\n")
    assert load_settings(str(path)).delivery.api_key == "${NOT_SET_ANYWHERE}"
