import configparser
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from moss.modules.errors import ConfigError

DEFAULT_LOCATIONS = [
    "/etc/moss/moss.conf",
    os.path.expanduser("~/.config/moss/moss.conf"),
]

PROVIDER_POLICIES = ("first", "strict")


class MossConfig:
    """Thin wrapper over configparser with typed getters and fallbacks."""

    def __init__(self, locations=None):
        self.locations = locations or DEFAULT_LOCATIONS
        self.config = configparser.ConfigParser()
        self.loaded_from = None

    def reload(self, required=False):
        """(Re)load the first existing file among the configured locations."""
        for path in self.locations:
            if os.path.isfile(path):
                try:
                    self.config.read(path, encoding="utf-8")
                except configparser.Error as e:
                    raise ConfigError(f"Couldn't parse config file at {path}: {e}", path=path) from e
                self.loaded_from = path
                return self
        if required:
            raise ConfigError(f"No configuration file found in: {self.locations}",
                              locations=list(self.locations))
        return self

    def get(self, section, option, fallback=None):
        try:
            return self.config.get(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getboolean(self, section, option, fallback=False):
        try:
            return self.config.getboolean(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getint(self, section, option, fallback=0):
        try:
            return self.config.getint(section, option, fallback=fallback)
        except (configparser.NoSectionError, configparser.NoOptionError, ValueError):
            return fallback

    def getlist(self, section, option, fallback=None, delimiter=","):
        raw = self.get(section, option, fallback="")
        if raw:
            return [item.strip() for item in raw.split(delimiter) if item.strip()]
        return fallback or []

    def getmapping(self, section, option, delimiter=","):
        """Parse ``a=b, c=d`` into a dict."""
        out = {}
        for item in self.getlist(section, option):
            if "=" in item:
                k, v = item.split("=", 1)
                out[k.strip()] = v.strip()
        return out

    def __getitem__(self, section):
        if section in self.config:
            return dict(self.config[section])
        raise KeyError(f"Section '{section}' not found.")

    def __contains__(self, section):
        return section in self.config


@dataclass(frozen=True)
class Settings:
    """Immutable configuration passed into the core once per process."""

    sysroot: str = "/"
    cache_dir: str = os.path.expanduser("~/.cache/moss")
    search_paths: Tuple[str, ...] = ()
    workers: int = 1
    strip: bool = True
    verbose_builds: bool = False
    log_dir: str = "/var/log/moss"
    db_dir: str = ""
    provider_policy: str = "first"
    provider_preferences: Dict[str, str] = field(default_factory=dict)
    remotes: Dict[str, str] = field(default_factory=dict)

    log_level: str = "info"
    log_format: str = "text"
    color_output: bool = True
    log_to_file: bool = True
    log_to_console: bool = True
    timestamp_utc: bool = False
    max_log_size_kb: int = 0

    def __post_init__(self):
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1 (got {self.workers})")
        if self.provider_policy not in PROVIDER_POLICIES:
            raise ConfigError(f"provider_policy must be one of {PROVIDER_POLICIES}",
                              value=self.provider_policy)

    @property
    def installed_db_dir(self) -> str:
        return self.db_dir or os.path.join(self.sysroot, "var", "lib", "moss", "installed")

    @property
    def sources_dir(self) -> str:
        return os.path.join(self.cache_dir, "sources")

    @property
    def build_dir(self) -> str:
        return os.path.join(self.cache_dir, "build")

    @property
    def staged_dir(self) -> str:
        return os.path.join(self.cache_dir, "staged")


def load_settings(path: Optional[str] = None, **overrides) -> Settings:
    """
    Read the configuration once and freeze it.

    An explicit ``path`` must exist; otherwise the default locations are
    searched and built-in defaults apply when none is present. Keyword
    ``overrides`` (e.g. from CLI flags) win over file values; ``None`` values
    are ignored.
    """
    cfg = MossConfig([path] if path else None).reload(required=bool(path))

    def _path(value):
        return os.path.abspath(os.path.expanduser(value)) if value else value

    values = dict(
        sysroot=_path(cfg.get("moss", "sysroot", fallback="/")),
        cache_dir=_path(cfg.get("moss", "cache_dir", fallback="~/.cache/moss")),
        search_paths=tuple(_path(p) for p in cfg.getlist("moss", "path")),
        workers=cfg.getint("moss", "workers", fallback=1),
        strip=cfg.getboolean("moss", "strip", fallback=True),
        verbose_builds=cfg.getboolean("moss", "verbose_builds", fallback=False),
        log_dir=_path(cfg.get("moss", "log_dir", fallback="/var/log/moss")),
        db_dir=_path(cfg.get("moss", "db_dir", fallback="")),
        provider_policy=cfg.get("moss", "provider_policy", fallback="first").lower(),
        provider_preferences=cfg["providers"] if "providers" in cfg else {},
        remotes=cfg.getmapping("moss", "remotes"),
        log_level=cfg.get("logging", "level", fallback="info").lower(),
        log_format=cfg.get("logging", "log_format", fallback="text").lower(),
        color_output=cfg.getboolean("logging", "color_output", fallback=True),
        log_to_file=cfg.getboolean("logging", "log_to_file", fallback=True),
        log_to_console=cfg.getboolean("logging", "log_to_console", fallback=True),
        timestamp_utc=cfg.getboolean("logging", "timestamp_utc", fallback=False),
        max_log_size_kb=cfg.getint("logging", "max_log_size_kb", fallback=0),
    )
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
