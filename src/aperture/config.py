"""Configuration management: directory layout, global config and env overrides.

* **Directory layout** -- the config root is ``$APERTURE_CONFIG_DIR`` when
  set, otherwise ``$XDG_CONFIG_HOME/aperture`` (default
  ``~/.config/aperture``). Below it live ``specs/`` (source documents),
  ``.cache/`` (compiled specs and their metadata), ``.cache/responses/``
  (response cache) and ``config.json``. See :func:`get_config_dir`.
* **Global config** -- a single :class:`~aperture.models.GlobalConfig`
  JSON file holding per-API overrides (base URLs, secret bindings) and the
  default cache and retry settings. Managed via :func:`load_global_config`
  and :func:`save_global_config`, plus the per-API helpers
  :func:`set_base_url`, :func:`set_secret` and :func:`remove_secret`.
* **Environment** -- :func:`env_base_url` and :func:`env_environment` read
  ``APERTURE_BASE_URL`` and ``APERTURE_ENV``.

All file writes go through :class:`~aperture.fs.FileSystem`, whose
:class:`~aperture.fs.OsFileSystem` implementation writes atomically.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from aperture.exceptions import ConfigError
from aperture.fs import FileSystem, OsFileSystem
from aperture.models import ApiConfig, CachedApertureSecret, GlobalConfig

_APP_NAME = "aperture"
_CONFIG_FILENAME = "config.json"

ENV_CONFIG_DIR = "APERTURE_CONFIG_DIR"
ENV_BASE_URL = "APERTURE_BASE_URL"
ENV_ENVIRONMENT = "APERTURE_ENV"

SPECS_DIRNAME = "specs"
CACHE_DIRNAME = ".cache"
RESPONSES_DIRNAME = "responses"


# --- Directory layout ---


def get_config_dir() -> Path:
    """Return the configuration root.

    ``$APERTURE_CONFIG_DIR`` wins; otherwise ``$XDG_CONFIG_HOME/aperture``
    with ``~/.config`` as the XDG default. The directory is not created
    here; writers create what they need.
    """
    override = os.environ.get(ENV_CONFIG_DIR, "")
    if override:
        return Path(override).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / _APP_NAME


def get_specs_dir(config_dir: Optional[Path] = None) -> Path:
    """Directory holding the source documents (``specs/<name>.yaml``)."""
    return (config_dir or get_config_dir()) / SPECS_DIRNAME


def get_cache_dir(config_dir: Optional[Path] = None) -> Path:
    """Directory holding compiled specs (``.cache/<name>.json``)."""
    return (config_dir or get_config_dir()) / CACHE_DIRNAME


def get_response_cache_dir(config_dir: Optional[Path] = None) -> Path:
    """Directory backing the response cache (``.cache/responses``)."""
    return get_cache_dir(config_dir) / RESPONSES_DIRNAME


# --- Global config ---


def _global_config_path(config_dir: Optional[Path]) -> Path:
    return (config_dir or get_config_dir()) / _CONFIG_FILENAME


def load_global_config(
    config_dir: Optional[Path] = None, fs: Optional[FileSystem] = None
) -> GlobalConfig:
    """Load the global configuration.

    Args:
        config_dir: Config root; defaults to :func:`get_config_dir`.
        fs: Filesystem to read through; defaults to the real one.

    Returns:
        The deserialised :class:`~aperture.models.GlobalConfig`. If the
        file does not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    fs = fs or OsFileSystem()
    path = _global_config_path(config_dir)
    if not fs.is_file(path):
        return GlobalConfig()
    try:
        data = json.loads(fs.read_text(path))
        return GlobalConfig.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid global config at {path}: {exc}") from exc


def save_global_config(
    config: GlobalConfig,
    config_dir: Optional[Path] = None,
    fs: Optional[FileSystem] = None,
) -> None:
    """Persist the global configuration atomically."""
    fs = fs or OsFileSystem()
    data = config.model_dump(mode="json")
    fs.write_text(_global_config_path(config_dir), json.dumps(data, indent=2) + "\n")


def _update_api_config(
    api_name: str,
    config_dir: Optional[Path],
    fs: Optional[FileSystem],
    update,
) -> GlobalConfig:
    config = load_global_config(config_dir, fs)
    api_config = config.api_configs.setdefault(api_name, ApiConfig())
    update(api_config)
    save_global_config(config, config_dir, fs)
    return config


def set_base_url(
    api_name: str,
    url: str,
    environment: Optional[str] = None,
    config_dir: Optional[Path] = None,
    fs: Optional[FileSystem] = None,
) -> GlobalConfig:
    """Record a base URL override for *api_name*.

    With *environment* the URL is stored in
    :attr:`~aperture.models.ApiConfig.environment_urls` and only applies
    when ``APERTURE_ENV`` selects that environment.
    """

    def update(api_config: ApiConfig) -> None:
        if environment:
            api_config.environment_urls[environment] = url
        else:
            api_config.base_url_override = url

    return _update_api_config(api_name, config_dir, fs, update)


def set_secret(
    api_name: str,
    scheme_name: str,
    env_var: str,
    config_dir: Optional[Path] = None,
    fs: Optional[FileSystem] = None,
) -> GlobalConfig:
    """Bind *scheme_name* of *api_name* to the environment variable *env_var*.

    Config bindings take precedence over ``x-aperture-secret`` in the spec.
    """
    from aperture.parser.compiler import is_valid_env_var_name

    if not is_valid_env_var_name(env_var):
        raise ConfigError(
            f"Invalid environment variable name '{env_var}' for scheme '{scheme_name}'"
        )
    secret = CachedApertureSecret(name=env_var)

    def update(api_config: ApiConfig) -> None:
        api_config.secrets[scheme_name] = secret

    return _update_api_config(api_name, config_dir, fs, update)


def remove_secret(
    api_name: str,
    scheme_name: str,
    config_dir: Optional[Path] = None,
    fs: Optional[FileSystem] = None,
) -> GlobalConfig:
    """Drop the config binding of *scheme_name*.

    Raises:
        ConfigError: If no binding exists.
    """
    config = load_global_config(config_dir, fs)
    api_config = config.api_configs.get(api_name)
    if api_config is None or scheme_name not in api_config.secrets:
        raise ConfigError(f"No secret configured for scheme '{scheme_name}' of API '{api_name}'")
    del api_config.secrets[scheme_name]
    save_global_config(config, config_dir, fs)
    return config


# --- Environment ---


def env_base_url() -> Optional[str]:
    """``APERTURE_BASE_URL`` when set and non-empty."""
    return os.environ.get(ENV_BASE_URL) or None


def env_environment() -> Optional[str]:
    """``APERTURE_ENV`` when set and non-empty."""
    return os.environ.get(ENV_ENVIRONMENT) or None
