"""Configuration of the sidecar injector webhook, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping

DEFAULT_PULL_POLICY = "Always"


class ConfigError(ValueError):
    """Raised when a required configuration value is missing."""


@dataclass
class InjectorConfig:
    """Settings of the sidecar injector webhook server."""

    tls_cert_file: str = ""
    tls_key_file: str = ""
    sidecar_image: str = ""
    sidecar_image_pull_policy: str = DEFAULT_PULL_POLICY
    namespace: str = ""


# field name -> (environment variable, required)
_ENVIRONMENT = {
    "tls_cert_file": ("TLS_CERT_FILE", True),
    "tls_key_file": ("TLS_KEY_FILE", True),
    "sidecar_image": ("SIDECAR_IMAGE", True),
    "sidecar_image_pull_policy": ("SIDECAR_IMAGE_PULL_POLICY", False),
    "namespace": ("NAMESPACE", True),
}


def config_from_environment(environ: Mapping[str, str] | None = None) -> InjectorConfig:
    """Build a configuration from environment variables.

    Variables that are not set keep their defaults; a missing required
    variable raises ConfigError. A variable set to an empty string counts as set.
    """
    env = os.environ if environ is None else environ
    config = InjectorConfig()
    for f in fields(InjectorConfig):
        var, required = _ENVIRONMENT[f.name]
        if var in env:
            setattr(config, f.name, env[var])
        elif required:
            raise ConfigError(f"required key {var} missing value")
    return config