import pytest

from rootspawn.config import Settings, config_path, load_settings
from rootspawn.errors import ConfigurationError


def test_defaults_without_file(tmp_path):
    settings = load_settings(tmp_path / "missing.toml", environ={})
    assert settings == Settings()
    assert settings.escalation_command == ("sudo",)


def test_config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        'escalation_command = ["doas"]\n'
        'default_uid = 1500\n'
        'docker_command = "podman"\n'
        'colour = "blue"\n'
    )
    settings = load_settings(path, environ={})

    assert settings.escalation_command == ("doas",)
    assert settings.default_uid == 1500
    assert settings.docker_command == "podman"


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('default_user = "builder"\n')
    environ = {
        "ROOTSPAWN_DEFAULT_USER": "tester",
        "ROOTSPAWN_ESCALATION_COMMAND": "sudo -E",
        "ROOTSPAWN_DEFAULT_GID": "2000",
    }
    settings = load_settings(path, environ=environ)

    assert settings.default_user == "tester"
    assert settings.escalation_command == ("sudo", "-E")
    assert settings.default_gid == 2000


def test_invalid_value(tmp_path):
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "missing.toml", environ={"ROOTSPAWN_DEFAULT_UID": "many"})


def test_invalid_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("this is [not toml\n")
    with pytest.raises(ConfigurationError):
        load_settings(path, environ={})


def test_config_path():
    path = config_path()
    assert path.name == "config.toml"
    assert path.parent.name == "rootspawn"
