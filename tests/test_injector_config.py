import pytest

from meshsidecar.injector_config import ConfigError, InjectorConfig, config_from_environment

FULL_ENV = {
    "TLS_CERT_FILE": "/certs/cert.pem",
    "TLS_KEY_FILE": "/certs/key.pem",
    "SIDECAR_IMAGE": "registry.example.com/sidecar:edge",
    "NAMESPACE": "system",
}


def test_defaults_have_always_pull_policy():
    config = InjectorConfig()
    assert config.sidecar_image_pull_policy == "Always"
    assert config.namespace == ""


def test_reads_required_values():
    config = config_from_environment(FULL_ENV)
    assert config.tls_cert_file == FULL_ENV["TLS_CERT_FILE"]
    assert config.tls_key_file == FULL_ENV["TLS_KEY_FILE"]
    assert config.sidecar_image == FULL_ENV["SIDECAR_IMAGE"]
    assert config.namespace == FULL_ENV["NAMESPACE"]


def test_pull_policy_defaults_when_unset():
    config = config_from_environment(FULL_ENV)
    assert config.sidecar_image_pull_policy == InjectorConfig().sidecar_image_pull_policy


def test_pull_policy_override():
    env = dict(FULL_ENV, SIDECAR_IMAGE_PULL_POLICY="IfNotPresent")
    assert config_from_environment(env).sidecar_image_pull_policy == "IfNotPresent"


@pytest.mark.parametrize("missing", ["TLS_CERT_FILE", "TLS_KEY_FILE", "SIDECAR_IMAGE", "NAMESPACE"])
def test_missing_required_value_raises(missing):
    env = {k: v for k, v in FULL_ENV.items() if k != missing}
    with pytest.raises(ConfigError, match=missing):
        config_from_environment(env)


def test_empty_value_counts_as_set():
    env = dict(FULL_ENV, NAMESPACE="")
    assert config_from_environment(env).namespace == ""


def test_config_error_is_value_error():
    with pytest.raises(ValueError):
        config_from_environment({})


def test_reads_process_environment(monkeypatch):
    for key, value in FULL_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("SIDECAR_IMAGE_PULL_POLICY", raising=False)
    config = config_from_environment()
    assert config.sidecar_image == FULL_ENV["SIDECAR_IMAGE"]