from pathlib import Path

from rotabot.config import Settings, allowed_senders


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SIGNAL_ACCOUNT", "+100")
    monkeypatch.setenv("SIGNAL_OWNER_NUMBER", "+200")
    monkeypatch.setenv("SIGNAL_ALLOWED_SENDERS", " +300, ,+400")
    monkeypatch.setenv("SUMMARY_OCCURRENCES", "6")

    settings = Settings()

    assert settings.database_path == Path("rotabot.db")
    assert settings.default_timezone == "UTC"
    assert settings.summary_occurrences == 6
    assert allowed_senders(settings) == frozenset({"+200", "+300", "+400"})
