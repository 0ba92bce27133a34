"""
AmbuSync Configuration
======================

Settings are layered, later layers winning key by key:

1. built-in defaults (``DEFAULTS``)
2. ``config.yaml`` in the config directory
3. ``config.<environment>.yaml`` for the selected environment
4. ``AMBUSYNC_*`` environment variables
5. explicit ``overrides`` passed by the caller (tests, embedding apps)

Values are read with dotted paths: ``cfg.get("sync.max_retries")``.
"""

import copy
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger("ambusync.config")

DEFAULTS: Dict[str, Any] = {
    "service_name": "ambusync",
    "environment": "production",
    "geo": {
        "assumed_speed_kmh": 40.0,
        "travel_speeds_kmh": {"walking": 5.0, "driving": 50.0, "emergency": 80.0},
    },
    "dispatch": {
        "max_distance_km": 100.0,
        "position_max_age_seconds": 300,
    },
    "capacity": {
        "distance_weight": 0.7,
        "capacity_weight": 0.3,
    },
    "workflow": {
        "arrival_radius_km": 0.1,
    },
    "sync": {
        "max_retries": 3,
        "backoff": "linear",
        "backoff_base_seconds": 30.0,
        "backoff_max_seconds": 900.0,
        "retention_seconds": 86400,
    },
    "connectivity": {
        "health_interval_seconds": 30.0,
        "health_path": "/health",
        "max_probe_backoff_seconds": 30.0,
    },
    "backend": {
        "base_url": "http://localhost:54321/rest/v1",
        "api_key": "",
        "timeout_seconds": 10.0,
    },
    "db": {
        "host": "localhost",
        "port": 5432,
        "name": "ambusync",
        "user": "ambusync",
        "password": "",
        "pool_min": 1,
        "pool_max": 5,
    },
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
    },
}

# env var -> (dotted path, converter); values that fail conversion are skipped
ENV_VARS: Dict[str, Tuple[str, Any]] = {
    "AMBUSYNC_ENV": ("environment", str),
    "AMBUSYNC_ASSUMED_SPEED_KMH": ("geo.assumed_speed_kmh", float),
    "AMBUSYNC_MAX_DISTANCE_KM": ("dispatch.max_distance_km", float),
    "AMBUSYNC_POSITION_MAX_AGE": ("dispatch.position_max_age_seconds", int),
    "AMBUSYNC_SYNC_MAX_RETRIES": ("sync.max_retries", int),
    "AMBUSYNC_SYNC_BACKOFF": ("sync.backoff", str),
    "AMBUSYNC_HEALTH_INTERVAL": ("connectivity.health_interval_seconds", float),
    "AMBUSYNC_BACKEND_URL": ("backend.base_url", str),
    "AMBUSYNC_BACKEND_API_KEY": ("backend.api_key", str),
    "AMBUSYNC_DB_HOST": ("db.host", str),
    "AMBUSYNC_DB_PORT": ("db.port", int),
    "AMBUSYNC_DB_NAME": ("db.name", str),
    "AMBUSYNC_DB_USER": ("db.user", str),
    "AMBUSYNC_DB_PASSWORD": ("db.password", str),
    "AMBUSYNC_LOG_LEVEL": ("logging.level", str),
}

BACKOFF_STRATEGIES = ("linear", "exponential")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        logger.debug("No config file at %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        logger.error("Ignoring %s: top level must be a mapping, got %s", path, type(data).__name__)
        return {}
    return data


def _merged(lower: Dict[str, Any], upper: Dict[str, Any]) -> Dict[str, Any]:
    """New dict with ``upper`` laid over ``lower``; nested mappings merge."""
    out = copy.deepcopy(lower)
    for key, value in upper.items():
        below = out.get(key)
        if isinstance(below, dict) and isinstance(value, dict):
            out[key] = _merged(below, value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _lookup(tree: Dict[str, Any], dotpath: str, default: Any) -> Any:
    node: Any = tree
    for key in dotpath.split("."):
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node


def _env_layer(environ: Dict[str, str]) -> Dict[str, Any]:
    layer: Dict[str, Any] = {}
    for name, (dotpath, convert) in ENV_VARS.items():
        raw = environ.get(name)
        if raw is None:
            continue
        try:
            value = convert(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: expected %s", name, raw, convert.__name__)
            continue
        *parents, leaf = dotpath.split(".")
        node = layer
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
    return layer


class AmbuSyncConfig:
    """Merged settings for one process.

    Parameters
    ----------
    config_dir : str, optional
        Where ``config.yaml`` and its environment overlays live.  Defaults to
        ``$AMBUSYNC_CONFIG_DIR`` or ``/etc/ambusync``.
    base_filename : str
        Name of the base YAML file.
    overrides : dict, optional
        Highest-priority layer.
    environ : dict, optional
        Environment to read ``AMBUSYNC_*`` variables from; ``os.environ``
        when omitted.
    """

    def __init__(
        self,
        config_dir: Optional[str] = None,
        base_filename: str = "config.yaml",
        overrides: Optional[Dict[str, Any]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> None:
        self._dir = Path(config_dir or os.environ.get("AMBUSYNC_CONFIG_DIR", "/etc/ambusync"))
        self._base = base_filename
        self._overrides = overrides or {}
        self._environ = environ
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        env_layer = _env_layer(os.environ if self._environ is None else self._environ)
        data = _merged(DEFAULTS, _read_yaml(self._dir / self._base))
        env_name = env_layer.get("environment", data.get("environment"))
        for layer in (_read_yaml(self._dir / f"config.{env_name}.yaml"), env_layer, self._overrides):
            data = _merged(data, layer)
        with self._lock:
            self._data = data
        logger.info("Loaded %s settings for environment %r", data.get("service_name"), env_name)

    def get(self, dotpath: str, default: Any = None) -> Any:
        """Value at ``dotpath`` (e.g. ``"db.port"``), or ``default``."""
        return _lookup(self._data, dotpath, default)

    def __getitem__(self, section: str) -> Any:
        return self._data[section]

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    @property
    def environment(self) -> str:
        return self._data.get("environment", "production")

    def reload(self) -> None:
        """Re-read the YAML files and the environment."""
        self._load()

    def validate(self) -> None:
        """Raise ``ValueError`` listing every setting that cannot be used."""
        problems = []

        dw = self.get("capacity.distance_weight")
        cw = self.get("capacity.capacity_weight")
        if not isinstance(dw, (int, float)) or not isinstance(cw, (int, float)):
            problems.append("capacity weights must be numbers")
        elif dw < 0 or cw < 0:
            problems.append("capacity weights must be non-negative")
        elif dw == 0 and cw == 0:
            problems.append("at least one capacity weight must be positive")

        retries = self.get("sync.max_retries")
        if not isinstance(retries, int) or retries < 1:
            problems.append(f"sync.max_retries must be an int >= 1, got {retries!r}")

        backoff = self.get("sync.backoff")
        if backoff not in BACKOFF_STRATEGIES:
            problems.append(f"unknown sync.backoff strategy {backoff!r}")

        speed = self.get("geo.assumed_speed_kmh")
        if not isinstance(speed, (int, float)) or speed <= 0:
            problems.append("geo.assumed_speed_kmh must be positive")

        if not self.get("backend.base_url"):
            problems.append("backend.base_url is required")

        level = str(self.get("logging.level", "INFO")).upper()
        if level not in LOG_LEVELS:
            problems.append(f"logging.level {level!r} is not a logging level")

        if problems:
            raise ValueError("invalid configuration:\n  " + "\n  ".join(problems))


def configure_logging(cfg: Optional[AmbuSyncConfig] = None) -> None:
    """Apply the ``logging`` section to the root logger."""
    cfg = cfg or get_config()
    logging.basicConfig(
        level=getattr(logging, str(cfg.get("logging.level", "INFO")).upper(), logging.INFO),
        format=cfg.get("logging.format"),
    )


_instance: Optional[AmbuSyncConfig] = None
_instance_lock = threading.Lock()


def get_config(config_dir: Optional[str] = None) -> AmbuSyncConfig:
    """Process-wide config, loaded on first use.

    ``config_dir`` only matters for that first call.
    """
    global _instance
    with _instance_lock:
        if _instance is None:
            _instance = AmbuSyncConfig(config_dir=config_dir)
        return _instance


def reload_config() -> None:
    with _instance_lock:
        current = _instance
    if current is not None:
        current.reload()


def reset_config() -> None:
    """Forget the process-wide config; the next :func:`get_config` builds a new one."""
    global _instance
    with _instance_lock:
        _instance = None
