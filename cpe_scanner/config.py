# cpe_scanner/config.py
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml
from platformdirs import user_data_path

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# --- Define App Name and Author for platformdirs ---
APP_NAME = "CpeScanner"
APP_AUTHOR = "CpeScanner"

CONFIG_FILENAME = "config.yaml"
DATA_DIR_ENV_VAR = "CPE_SCANNER_DATA_DIR"

DB_FILENAME = "vuln_db.sqlite"
CPE_INDEX_FILENAME = "cpe_index.sqlite"

# NVD legacy XML feeds; {year} is substituted per yearly segment
NVD_CVE_20_MODIFIED_URL = "https://nvd.nist.gov/feeds/xml/cve/nvdcve-2.0-Modified.xml.gz"
NVD_CVE_12_MODIFIED_URL = "https://nvd.nist.gov/feeds/xml/cve/1.2/nvdcve-Modified.xml.gz"
NVD_CVE_20_BASE_URL = "https://nvd.nist.gov/feeds/xml/cve/nvdcve-2.0-{year}.xml.gz"
NVD_CVE_12_BASE_URL = "https://nvd.nist.gov/feeds/xml/cve/1.2/nvdcve-{year}.xml.gz"


def default_data_directory() -> Path:
    env_dir = os.environ.get(DATA_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser()
    return user_data_path(appname=APP_NAME, appauthor=APP_AUTHOR)


@dataclass(frozen=True)
class ProxySettings:
    server: str
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)

    def url(self, with_credentials: bool = False) -> str:
        server = self.server
        scheme = "http://"
        if "://" in server:
            scheme, server = server.split("://", 1)
            scheme += "://"
        auth = ""
        if with_credentials and self.username:
            auth = f"{self.username}:{self.password or ''}@"
        port = f":{self.port}" if self.port else ""
        return f"{scheme}{auth}{server}{port}"

    def as_requests_proxies(self, with_credentials: bool = False) -> dict:
        proxy_url = self.url(with_credentials)
        return {"http": proxy_url, "https": proxy_url}


@dataclass
class Settings:
    """Everything a component needs to know; passed explicitly, never read from globals."""
    data_directory: Path = field(default_factory=default_data_directory)
    cve_modified_20_url: str = NVD_CVE_20_MODIFIED_URL
    cve_modified_12_url: Optional[str] = NVD_CVE_12_MODIFIED_URL
    cve_base_20_url: str = NVD_CVE_20_BASE_URL
    cve_base_12_url: Optional[str] = NVD_CVE_12_BASE_URL
    cve_start_year: int = 2002
    cve_modified_valid_for_days: int = 7
    cpe_dictionary_url: Optional[str] = None
    max_download_threads: int = 3
    connection_timeout: float = 60.0
    database_timeout: float = 30.0
    auto_update: bool = True
    proxy: Optional[ProxySettings] = None
    suppress_cpes: list = field(default_factory=list)
    suppress_cves: list = field(default_factory=list)

    @property
    def database_file(self) -> Path:
        return Path(self.data_directory) / DB_FILENAME

    @property
    def cpe_index_file(self) -> Path:
        return Path(self.data_directory) / CPE_INDEX_FILENAME


_INT_KEYS = {"cve_start_year", "cve_modified_valid_for_days", "max_download_threads"}
_FLOAT_KEYS = {"connection_timeout", "database_timeout"}
_LIST_KEYS = {"suppress_cpes", "suppress_cves"}
# may be set to null to switch the feed off
_NULLABLE_KEYS = {"cve_modified_12_url", "cve_base_12_url", "cpe_dictionary_url"}


def _parse_proxy(entry, label: str) -> ProxySettings:
    if not isinstance(entry, dict) or not entry.get("server"):
        raise ConfigurationError(f"Proxy configuration '{label}' must be a mapping with at least a 'server'.")
    port = entry.get("port")
    if port is not None:
        try:
            port = int(port)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Proxy port for '{label}' is not a number: {port!r}") from e
    return ProxySettings(server=str(entry["server"]), port=port,
                         username=entry.get("username"), password=entry.get("password"),
                         name=entry.get("name"))


def resolve_proxy(config: dict) -> Optional[ProxySettings]:
    """
    Picks the proxy from `proxy` (one mapping) or `proxies` (a list, chosen by
    `use_proxy`). More than one candidate without a selection is an error.
    """
    candidates = []
    if config.get("proxy"):
        candidates.append(_parse_proxy(config["proxy"], "proxy"))
    proxies = config.get("proxies") or []
    if not isinstance(proxies, list):
        raise ConfigurationError("'proxies' must be a list of proxy mappings.")
    for i, entry in enumerate(proxies):
        candidates.append(_parse_proxy(entry, f"proxies[{i}]"))

    selection = config.get("use_proxy")
    if selection is not None:
        for candidate in candidates:
            if candidate.name == selection or candidate.server == selection:
                return candidate
        raise ConfigurationError(f"'use_proxy' names '{selection}', which is not a configured proxy.")
    if len(candidates) > 1:
        names = ", ".join(c.name or c.server for c in candidates)
        raise ConfigurationError(f"Several proxies are configured ({names}); set 'use_proxy' to choose one.")
    return candidates[0] if candidates else None


def settings_from_dict(config: dict) -> Settings:
    kwargs = {}
    known = {f.name for f in fields(Settings)} - {"proxy"}
    for key, value in config.items():
        if key in ("proxy", "proxies", "use_proxy"):
            continue
        if key not in known:
            logger.warning(f"Ignoring unknown configuration key '{key}'")
            continue
        if value is None:
            if key in _NULLABLE_KEYS:
                kwargs[key] = None
            continue
        try:
            if key in _INT_KEYS:
                value = int(value)
            elif key in _FLOAT_KEYS:
                value = float(value)
            elif key == "data_directory":
                value = Path(str(value)).expanduser()
            elif key in _LIST_KEYS:
                if not isinstance(value, list):
                    raise ConfigurationError(f"'{key}' must be a list, found {type(value).__name__}.")
                value = [str(v).strip() for v in value if str(v).strip()]
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for '{key}': {value!r}") from e
        kwargs[key] = value
    if kwargs.get("max_download_threads", 1) < 1:
        raise ConfigurationError("'max_download_threads' must be at least 1.")
    # the environment variable wins over the file
    if os.environ.get(DATA_DIR_ENV_VAR):
        kwargs["data_directory"] = default_data_directory()
    kwargs["proxy"] = resolve_proxy(config)
    return Settings(**kwargs)


def load_config(config_path=CONFIG_FILENAME) -> Settings:
    config = {}
    path = Path(config_path)
    if path.is_file():
        logger.info(f"Attempting to load configuration from '{path.resolve()}'...")
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded_yaml = yaml.safe_load(f)
            if isinstance(loaded_yaml, dict):
                config = loaded_yaml
                logger.info(f"Successfully loaded configuration from {path.resolve()}")
            elif loaded_yaml is not None:
                logger.warning(f"Configuration file '{path}' is not a mapping. Using defaults.")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing YAML configuration file '{path.resolve()}': {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Unable to read configuration file '{path.resolve()}': {e}") from e
    else:
        logger.info(f"Configuration file '{config_path}' not found. Using defaults.")
    return settings_from_dict(config)
