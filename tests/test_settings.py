from __future__ import annotations

from pathlib import Path

import pytest

from agentjobs.settings import get_settings, parse_container_endpoints


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults_without_env_file(tmp_path, monkeypatch):
    for key in ("QUEUE_BACKEND", "CONTAINER_ENDPOINTS", "LOCAL_CONTAINERS", "OVERLOAD_RETRY_DELAYS"):
        monkeypatch.delenv(key, raising=False)

    settings = get_settings(str(tmp_path / "missing.env"))

    assert settings.queue.backend == "memory"
    assert settings.queue.visibility_timeout_seconds == 600.0
    assert settings.queue.max_receive_count == 3
    assert settings.dispatch.invocation_timeout_seconds == 360.0
    assert settings.dispatch.local_containers == ("browser_automation", "qa")
    assert settings.anthropic.overload_retry_delays == (30.0, 60.0)
    assert settings.browser.idle_timeout_seconds == 900.0


def test_env_file_values_are_loaded(tmp_path, monkeypatch):
    monkeypatch.delenv("QUEUE_BACKEND", raising=False)
    monkeypatch.delenv("CONTAINER_ENDPOINTS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text(
        "QUEUE_BACKEND=redis\n"
        "CONTAINER_ENDPOINTS=qa=http://qa:9000, browser_automation=http://ba:9000\n"
        "RESULTS_ROOT=/srv/results\n"
    )

    settings = get_settings(str(env_file))

    assert settings.queue.backend == "redis"
    assert settings.dispatch.container_endpoints == {
        "qa": "http://qa:9000",
        "browser_automation": "http://ba:9000",
    }
    assert settings.storage.results_root == Path("/srv/results")


def test_environment_overrides_env_file(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("AGENT_MAX_STEPS=7\n")
    monkeypatch.setenv("AGENT_MAX_STEPS", "12")

    assert get_settings(str(env_file)).agent.max_steps == 12


def test_invocation_timeout_must_fit_inside_visibility(tmp_path, monkeypatch):
    monkeypatch.setenv("WORKER_INVOCATION_TIMEOUT_SECONDS", "600")
    monkeypatch.setenv("QUEUE_VISIBILITY_TIMEOUT_SECONDS", "600")

    with pytest.raises(ValueError, match="WORKER_INVOCATION_TIMEOUT_SECONDS"):
        get_settings(str(tmp_path / "missing.env"))


def test_unknown_queue_backend_is_rejected(tmp_path, monkeypatch):
    monkeypatch.setenv("QUEUE_BACKEND", "sqs")

    with pytest.raises(ValueError, match="QUEUE_BACKEND"):
        get_settings(str(tmp_path / "missing.env"))


def test_parse_container_endpoints_rejects_malformed_entries():
    assert parse_container_endpoints("") == {}
    with pytest.raises(ValueError, match="expected name=url"):
        parse_container_endpoints("qa")
