import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import yaml

from arr_api import DEFAULT_RETRIES

SERVICES = ("radarr", "sonarr")
CONFIG_ENV_VAR = "INSPECTARR_CONFIG"

# Example config.yaml; every key is optional and flags/env vars win.
#
#   radarr:
#     url: http://localhost:7878
#     api_key: 0123456789abcdef
#   sonarr:
#     url: http://localhost:8989
#     api_key: fedcba9876543210
#     retries: 2
#     timeout: 30


class ConfigError(Exception):
    """Missing or invalid user configuration."""


@dataclass
class ServiceSettings:
    name: str
    url: str
    api_key: str
    retries: int = DEFAULT_RETRIES
    timeout: Optional[float] = None


def default_config_path(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    environ = os.environ if environ is None else environ
    return environ.get(CONFIG_ENV_VAR) or None


def load_config(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found at {path}") from exc
    except OSError as exc:
        raise ConfigError(f"Could not read configuration file {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error parsing '{path}'") from exc

    if not isinstance(config, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")
    for service in SERVICES:
        section = config.get(service)
        if section is not None and not isinstance(section, dict):
            raise ConfigError(f"'{service}' in {path} must be a mapping")
    return config


def _validate_url(label: str, url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"Invalid {label} URL '{url}': expected an http(s) URL")
    return url


def resolve_service_settings(
    service: str,
    url: Optional[str] = None,
    api_key: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServiceSettings:
    """Pick URL and API key from the flag, then <SERVICE>_URL /
    <SERVICE>_API_KEY, then the config file."""
    environ = os.environ if environ is None else environ
    section = (config or {}).get(service) or {}
    label = service.capitalize()
    url_var = f"{service.upper()}_URL"
    api_key_var = f"{service.upper()}_API_KEY"

    url = url or environ.get(url_var) or section.get("url")
    if not url:
        raise ConfigError(
            f"A {label} URL is required. Provide via '--url' option or '{url_var}' environment variable."
        )
    api_key = api_key or environ.get(api_key_var) or section.get("api_key")
    if not api_key:
        raise ConfigError(
            f"A {label} API key is required. Provide via '--api-key' option or '{api_key_var}' environment variable."
        )

    retries = section.get("retries", DEFAULT_RETRIES)
    if not isinstance(retries, int) or isinstance(retries, bool) or retries < 0:
        raise ConfigError(f"{service}.retries must be a non-negative integer")

    timeout = section.get("timeout")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        raise ConfigError(f"{service}.timeout must be a positive number")

    return ServiceSettings(
        name=service,
        url=_validate_url(label, str(url)),
        api_key=str(api_key),
        retries=retries,
        timeout=timeout,
    )
