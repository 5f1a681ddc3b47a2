from hems.core.config import Settings


def test_comma_separated_lists_from_environment(monkeypatch):
    monkeypatch.setenv("UNIVERSITY_EMAIL_DOMAINS", "hems.edu, @AAU.edu.et,,")
    monkeypatch.setenv("CORS_ORIGINS", "https://exam.hems.edu,http://localhost:3000")
    s = Settings()
    assert s.UNIVERSITY_EMAIL_DOMAINS == ["hems.edu", "aau.edu.et"]
    assert s.CORS_ORIGINS == ["https://exam.hems.edu", "http://localhost:3000"]


def test_list_defaults_without_environment(monkeypatch):
    monkeypatch.delenv("UNIVERSITY_EMAIL_DOMAINS", raising=False)
    monkeypatch.delenv("CORS_ORIGINS", raising=False)
    s = Settings(_env_file=None)
    assert "hems.edu" in s.UNIVERSITY_EMAIL_DOMAINS
    assert s.CORS_ORIGINS == ["*"]
