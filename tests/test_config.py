from shared.config.client import ClientConfig, RetryConfig, load_client_config


def test_bundled_file_matches_defaults():
    assert load_client_config(use_env=False) == ClientConfig()


def test_missing_file_falls_back_to_defaults(tmp_path):
    assert load_client_config(path=tmp_path / "missing.json", use_env=False) == ClientConfig()


def test_non_object_root_is_ignored(tmp_path):
    path = tmp_path / "client.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")

    assert load_client_config(path=path, use_env=False) == ClientConfig()


def test_bad_values_fall_back_per_key():
    cfg = load_client_config(
        {
            "polling": {
                "messages_interval": "fast",
                "count_interval": -1,
                "recent_limit": True,
                "messages_retry": {"max_attempts": 5},
            },
            "actor": "not a section",
        },
        use_env=False,
    )

    assert cfg.polling.messages_interval == 1.5
    assert cfg.polling.count_interval == 5.0
    assert cfg.polling.recent_limit == 100
    assert cfg.polling.messages_retry == RetryConfig(max_attempts=5, base_delay=1.0, cap_delay=10.0)
    assert cfg.actor.url == "http://127.0.0.1:4943"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DINICHAT_ACTOR_URL", "http://actor.example:8000")
    monkeypatch.setenv("DINICHAT_REQUEST_TIMEOUT", "3.5")
    monkeypatch.setenv("DINICHAT_SESSION_PATH", "/tmp/dini/session.json")

    cfg = load_client_config({"actor": {"url": "http://ignored"}})

    assert cfg.actor.url == "http://actor.example:8000"
    assert cfg.actor.request_timeout == 3.5
    assert cfg.session_path == "/tmp/dini/session.json"


def test_environment_ignored_when_disabled(monkeypatch):
    monkeypatch.setenv("DINICHAT_ACTOR_URL", "http://actor.example:8000")

    assert load_client_config({}, use_env=False).actor.url == "http://127.0.0.1:4943"
