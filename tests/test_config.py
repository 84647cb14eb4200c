"""
Tests for configuration loading and defaults.
"""
import yaml
from grappa import should


def test_load_config_merges_over_defaults(monkeypatch):
    """Sections present in config.yaml override defaults key by key"""
    from tribunal.config import load_config

    content = {
        "settings": {"timeout": 45, "max_retries": 3},
        "arbiter": {"model": "groq/llama-3.3-70b-versatile"},
    }
    monkeypatch.setattr("pathlib.Path.read_text", lambda *a, **k: yaml.dump(content))

    config = load_config()
    config["settings"]["timeout"] | should.equal(45)
    config["settings"]["max_retries"] | should.equal(3)
    # untouched keys keep their defaults
    config["settings"]["idle_timeout"] | should.equal(30)
    config["settings"]["backoff_base_ms"] | should.equal(2000)
    config["arbiter"]["model"] | should.equal("groq/llama-3.3-70b-versatile")
    config["test_runner"]["partial_threshold"] | should.equal(400)


def test_load_config_falls_back_to_defaults(monkeypatch):
    """A missing config file yields the built-in defaults"""
    from tribunal.config import DEFAULT_CONFIG, load_config

    def mock_read_text_error(*args, **kwargs):
        raise FileNotFoundError("Config file not found")

    monkeypatch.setattr("pathlib.Path.read_text", mock_read_text_error)
    config = load_config()
    config | should.equal(DEFAULT_CONFIG)
    config["settings"]["timeout"] | should.equal(90)


def test_load_config_empty_file(monkeypatch):
    from tribunal.config import load_config

    monkeypatch.setattr("pathlib.Path.read_text", lambda *a, **k: "")
    config = load_config()
    config["settings"]["fallback_enabled"] | should.be.true
    config["test_runner"]["min_tokens"] | should.equal(512)
    config["test_runner"]["max_tokens"] | should.equal(16384)


def test_load_config_keeps_extra_sections(monkeypatch):
    from tribunal.config import load_config

    content = {"custom": {"flag": True}}
    monkeypatch.setattr("pathlib.Path.read_text", lambda *a, **k: yaml.dump(content))
    load_config()["custom"] | should.equal({"flag": True})
