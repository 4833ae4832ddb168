import pytest

from romshelf.config.loader import (
    DEFAULT_CONFIG,
    ENV_CLIENT_ID,
    ENV_CLIENT_SECRET,
    ConfigError,
    get_config_value,
    load_config,
    merge_config,
)


@pytest.mark.unit
def test_loads_file_over_defaults(make_config, tmp_path):
    config = load_config(make_config({"matching": {"fuzzy_threshold": 0.6}}))

    assert config["metadata_api"]["client_id"] == "test-client"
    assert config["matching"]["fuzzy_threshold"] == 0.6
    # Untouched keys keep their defaults
    assert config["matching"]["score_threshold"] == DEFAULT_CONFIG["matching"]["score_threshold"]
    assert config["runtime"]["batch_size"] == 5
    assert config["output"]["format"] == "json"


@pytest.mark.unit
def test_derived_paths_follow_output(make_config, tmp_path):
    config = load_config(make_config())
    output = tmp_path / "data"
    assert config["paths"]["images"] == str(output / "images")
    assert config["cache"]["directory"] == str(output / ".cache")


@pytest.mark.unit
def test_single_rom_root_string_becomes_list(make_config, tmp_path):
    config = load_config(make_config({"paths": {"roms": str(tmp_path / "only")}}))
    assert config["paths"]["roms"] == [str(tmp_path / "only")]


@pytest.mark.unit
def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.yaml")

    config = load_config(tmp_path / "absent.yaml", require_file=False)
    assert config["runtime"]["checkpoint_every"] == 20


@pytest.mark.unit
def test_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("paths: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path)


@pytest.mark.unit
@pytest.mark.parametrize("content", ["- a\n- b\n", "runtime: 5\n"])
def test_wrong_shapes_are_rejected(tmp_path, content):
    path = tmp_path / "config.yaml"
    path.write_text(content)
    with pytest.raises(ConfigError):
        load_config(path)


@pytest.mark.unit
def test_credentials_from_environment(make_config, monkeypatch):
    monkeypatch.setenv(ENV_CLIENT_ID, "env-id")
    monkeypatch.setenv(ENV_CLIENT_SECRET, "env-secret")

    config = load_config(make_config({"metadata_api": {"client_id": "", "client_secret": None}}))
    assert config["metadata_api"]["client_id"] == "env-id"
    assert config["metadata_api"]["client_secret"] == "env-secret"

    # File values win over the environment
    config = load_config(make_config())
    assert config["metadata_api"]["client_id"] == "test-client"


@pytest.mark.unit
def test_merge_config_does_not_mutate_base():
    base = {"a": {"b": 1, "c": [1]}}
    merged = merge_config(base, {"a": {"b": 2}, "d": 3})
    assert merged == {"a": {"b": 2, "c": [1]}, "d": 3}
    assert base == {"a": {"b": 1, "c": [1]}}
    merged["a"]["c"].append(2)
    assert base["a"]["c"] == [1]


@pytest.mark.unit
def test_get_config_value():
    config = {"runtime": {"batch_size": 10}}
    assert get_config_value(config, "runtime.batch_size") == 10
    assert get_config_value(config, "runtime.missing", "x") == "x"
    assert get_config_value(config, "runtime.batch_size.deeper") is None
