import main


def test_load_settings_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("GMS_CONFIG", str(tmp_path / "missing.ini"))
    for name in ("GMS_DB_PATH", "GMS_API_TOKEN", "GMS_TICK_INTERVAL", "GMS_TEST_MODE", "GMS_SMTP_PORT"):
        monkeypatch.delenv(name, raising=False)

    settings = main.load_settings()
    assert settings["db_path"] == "/data/scheduled_mail.db"
    assert settings["tick_interval"] == 60.0
    assert settings["test_mode"] is False
    assert settings["smtp_port"] == 25
    assert settings["max_concurrent_groups"] == 4
    assert settings["api_token"] is None


def test_config_file_overrides_environment(monkeypatch, tmp_path):
    config = tmp_path / "config.ini"
    config.write_text(
        "[scheduler]\n"
        "tick_interval_seconds = 15\n"
        "test_mode = yes\n"
        "[smtp]\n"
        "host = mail.example.com\n"
        "port = 465\n"
        "[server]\n"
        "api_token =   \n"
    )
    monkeypatch.setenv("GMS_CONFIG", str(config))
    monkeypatch.setenv("GMS_TICK_INTERVAL", "30")
    monkeypatch.setenv("GMS_SEND_TIMEOUT", "5")

    settings = main.load_settings()
    assert settings["tick_interval"] == 15.0
    assert settings["test_mode"] is True
    assert settings["smtp_host"] == "mail.example.com"
    assert settings["smtp_port"] == 465
    assert settings["send_timeout"] == 5.0
    assert settings["api_token"] is None


def test_build_service_wires_smtp_sender(monkeypatch, tmp_path):
    monkeypatch.setenv("GMS_CONFIG", str(tmp_path / "missing.ini"))
    monkeypatch.setenv("GMS_DB_PATH", str(tmp_path / "db.sqlite"))
    monkeypatch.setenv("GMS_SMTP_PORT", "465")
    monkeypatch.setenv("GMS_TEST_MODE", "1")

    service = main.build_service(main.load_settings())
    assert service.sender.use_tls is True
    assert service.persistence.db_path == str(tmp_path / "db.sqlite")
    assert service._test_mode is True
