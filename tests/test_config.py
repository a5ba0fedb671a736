import socket

import pytest

from shared.config import PROTOCOL_VERSION, ConfigError, TransportConfig
from shared.system import get_system_metadata


def test_from_dict_applies_defaults():
    cfg = TransportConfig.from_dict({"public_key": "pub", "secret_key": "sec"})

    assert cfg.machine_name == socket.gethostname()
    assert cfg.protocol_version == PROTOCOL_VERSION
    assert cfg.compress is False


def test_from_dict_requires_keys():
    with pytest.raises(ConfigError, match="secret_key"):
        TransportConfig.from_dict({"public_key": "pub"})


def test_secret_is_hidden_from_repr():
    cfg = TransportConfig(public_key="pub", secret_key="very-secret")
    assert "very-secret" not in repr(cfg)


def test_from_yaml_reads_transport_section(tmp_path):
    path = tmp_path / "interactor.yaml"
    path.write_text(
        "transport:\n"
        "  public_key: pub\n"
        "  secret_key: sec\n"
        "  machine_name: web-1\n"
        "  compress: yes\n"
        "  protocol_version: 2\n"
    )

    cfg = TransportConfig.from_yaml(path)

    assert cfg.machine_name == "web-1"
    assert cfg.compress is True
    assert cfg.protocol_version == 2


def test_from_yaml_rejects_non_mapping(tmp_path):
    path = tmp_path / "interactor.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError):
        TransportConfig.from_yaml(path)


def test_from_env():
    cfg = TransportConfig.from_env({
        "INTERACTOR_PUBLIC_KEY": "pub",
        "INTERACTOR_SECRET_KEY": "sec",
        "INTERACTOR_MACHINE_NAME": "db-2",
        "INTERACTOR_COMPRESS": "true",
    })

    assert (cfg.public_key, cfg.machine_name, cfg.compress) == ("pub", "db-2", True)


def test_from_env_missing_keys():
    with pytest.raises(ConfigError):
        TransportConfig.from_env({})


def test_system_metadata_is_tagged_with_config():
    cfg = TransportConfig(public_key="pub", secret_key="sec", machine_name="web-1")

    metadata = get_system_metadata(cfg)

    assert metadata["machine_name"] == "web-1"
    assert metadata["public_key"] == "pub"
    assert "secret_key" not in metadata
    assert metadata["cpus"] >= 1
