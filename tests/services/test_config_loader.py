import pytest

from proxyupgrader.errors import ConfigError
from proxyupgrader.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".proxyupgrader.yml"
    config_file.write_text(
        "root_dir: ./proxy\nproxy_port: 18080\nproxy_args: ['-port', '{port}']\n",
        encoding="utf-8",
    )

    loaded = ConfigLoader().load(str(config_file))

    assert loaded["root_dir"] == "./proxy"
    assert loaded["proxy_port"] == 18080
    assert loaded["proxy_args"] == ["-port", "{port}"]


def test_config_loader_returns_empty_mapping_without_path_or_content(tmp_path):
    config_file = tmp_path / ".proxyupgrader.yml"
    config_file.write_text("", encoding="utf-8")

    loader = ConfigLoader()

    assert loader.load(None) == {}
    assert loader.load(str(config_file)) == {}


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".proxyupgrader.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration keys: unknown_key"):
        ConfigLoader().load(str(config_file))


def test_config_loader_rejects_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="Config file not found"):
        ConfigLoader().load(str(tmp_path / "missing.yml"))


@pytest.mark.parametrize(
    "content, message",
    [
        ("- a\n- b\n", "YAML mapping"),
        ("proxy_args: --port\n", "proxy_args"),
        ("max_installed_versions: 0\n", "max_installed_versions"),
        ("max_installed_versions: -2\n", "max_installed_versions"),
        ("max_installed_versions: three\n", "max_installed_versions"),
        ("root_dir: [unclosed\n", "Invalid config file"),
    ],
)
def test_config_loader_rejects_invalid_content(tmp_path, content, message):
    config_file = tmp_path / ".proxyupgrader.yml"
    config_file.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        ConfigLoader().load(str(config_file))
