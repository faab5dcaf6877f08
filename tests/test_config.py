import textwrap

import pytest

from overseer.config import ConfigError, OverseerConfig, load_config, parse_config
from overseer.providers.types import InvocationMode, ProviderType


def _write(tmp_path, body, name="overseer.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_missing_default_file_yields_defaults(tmp_path):
    config = load_config(search_dir=tmp_path, environ={})

    assert config == OverseerConfig()
    assert config.hard_timeout_seconds == 1800.0
    assert config.stall_timeout_seconds is None
    assert config.mode is InvocationMode.HEADLESS


def test_explicit_missing_file_is_an_error(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.yaml", environ={})


def test_full_configuration_is_parsed(tmp_path):
    path = _write(
        tmp_path,
        """
        provider: Codex
        mode: interactive
        hard_timeout_seconds: 600
        stall_timeout_seconds: 90
        grace_period_seconds: 2
        providers:
          codex:
            model: gpt-5-codex
            binary: /opt/codex/bin/codex
            env:
              CODEX_HOME: /tmp/codex-home
          claude:
            model: opus
        """,
    )

    config = load_config(path, environ={})

    assert config.provider == "codex"
    assert config.mode is InvocationMode.INTERACTIVE
    assert config.hard_timeout_seconds == 600.0
    assert config.stall_timeout_seconds == 90.0
    assert config.grace_period_seconds == 2.0
    codex = config.settings_for(ProviderType.CODEX)
    assert codex.model == "gpt-5-codex"
    assert codex.binary == "/opt/codex/bin/codex"
    assert dict(codex.env) == {"CODEX_HOME": "/tmp/codex-home"}
    assert config.settings_for("claude").model == "opus"
    assert config.settings_for("gemini").model is None
    assert config.path == path


def test_default_file_is_found_in_search_dir(tmp_path):
    _write(tmp_path, "provider: gemini\n")

    assert load_config(search_dir=tmp_path, environ={}).provider == "gemini"


def test_config_path_from_environment(tmp_path):
    path = _write(tmp_path, "provider: opencode\n", name="custom.yaml")

    config = load_config(environ={"OVERSEER_CONFIG": str(path)})

    assert config.provider == "opencode"


def test_environment_overrides_timeouts(tmp_path):
    path = _write(tmp_path, "hard_timeout_seconds: 100\nstall_timeout_seconds: 50\n")

    config = load_config(
        path,
        environ={"OVERSEER_HARD_TIMEOUT": "42", "OVERSEER_STALL_TIMEOUT": "0"},
    )

    assert config.hard_timeout_seconds == 42.0
    assert config.stall_timeout_seconds is None


@pytest.mark.parametrize(
    "data, key",
    [
        ({"provider": "pi"}, "provider"),
        ({"mode": "batch"}, "mode"),
        ({"hard_timeout_seconds": -1}, "hard_timeout_seconds"),
        ({"hard_timeout_seconds": "soon"}, "hard_timeout_seconds"),
        ({"grace_period_seconds": -5}, "grace_period_seconds"),
        ({"providers": ["claude"]}, "providers"),
        ({"providers": {"pi": {}}}, "providers"),
        ({"providers": {"claude": {"env": "A=1"}}}, "providers.claude.env"),
        ({"providers": {"claude": {"model": 5}}}, "providers.claude.model"),
    ],
)
def test_invalid_values_name_the_key(data, key):
    with pytest.raises(ConfigError, match=key):
        parse_config(data)


def test_invalid_timeout_from_environment(tmp_path):
    with pytest.raises(ConfigError, match="OVERSEER_HARD_TIMEOUT"):
        load_config(search_dir=tmp_path, environ={"OVERSEER_HARD_TIMEOUT": "abc"})


def test_invalid_yaml_is_a_config_error(tmp_path):
    path = _write(tmp_path, "provider: [unclosed\n")

    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(path, environ={})


def test_top_level_must_be_mapping(tmp_path):
    path = _write(tmp_path, "- claude\n- codex\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(path, environ={})


def test_config_error_is_value_error():
    assert issubclass(ConfigError, ValueError)


def test_empty_file_is_defaults(tmp_path):
    path = _write(tmp_path, "")

    config = load_config(path, environ={})

    assert config.provider is None
    assert config.providers == {}
