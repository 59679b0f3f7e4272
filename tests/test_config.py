import pytest

from microbit_gateway.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
)


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.name_filter == "BBC micro:bit"
    assert config.liveness_threshold == 30.0
    assert config.sweep_interval == 10.0
    assert config.grace_period == 60.0


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("liveness_threshold", 0.0, "liveness_threshold"),
        ("sweep_interval", 0.0, "sweep_interval"),
        ("grace_period", -1.0, "grace_period"),
        ("api_port", 0, "api_port"),
        ("max_line_length", 4, "max_line_length"),
        ("line_mode", "stream", "line_mode"),
        ("name_filter", "", "name_filter"),
        ("command_char_uuid", "not-a-uuid", "command_char_uuid"),
        ("log_level", "LOUD", "log_level"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


def test_sources_layer_file_env_and_cli(tmp_path, monkeypatch) -> None:
    config_file = tmp_path / "gateway.toml"
    config_file.write_text(
        'name-filter = "micro:bit"\n'
        "grace_period = 120\n"
        "api_port = 4000\n"
        'line_mode = "newline"\n'
    )
    monkeypatch.setenv("MICROBIT_GATEWAY_API_PORT", "5000")
    monkeypatch.setenv("MICROBIT_GATEWAY_SCAN_ALLOW_DUPLICATES", "false")

    config = Config.from_sources(["--config", str(config_file), "--grace-period", "90"])

    assert config.name_filter == "micro:bit"
    assert config.line_mode == "newline"
    assert config.api_port == 5000
    assert config.grace_period == 90.0
    assert config.scan_allow_duplicates is False


def test_unknown_file_keys_rejected(tmp_path) -> None:
    config_file = tmp_path / "gateway.toml"
    config_file.write_text("poll_interval = 5\n")

    with pytest.raises(ValueError, match="Unknown configuration key"):
        Config.from_sources(["--config", str(config_file)])


def test_logging_dict_lists_runtime_settings() -> None:
    logged = Config(log_format="json").logging_dict()
    assert logged["log_format"] == "json"
    assert logged["name_filter"] == "BBC micro:bit"
    assert logged["liveness_threshold"] == 30.0
