# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

import configparser
import logging
import os

logger = logging.getLogger("ankipkg.config")

ENV_PREFIX = "ANKIPKG_"
SECTION = "ankipkg"

DEFAULTS = {
    "package_version": "latest",
    "zstd_level": "3",
    "include_media_hashes": "true",
    "log_level": "INFO",
    "id_seed": "",
}

# Searched in order, later files override earlier ones
paths = [
    "/etc/ankipkg/ankipkg.conf",
    os.path.join(os.path.expanduser("~"), ".config", "ankipkg", "ankipkg.conf"),
]

_VERSION_NAMES = {
    "latest": 3,
    "legacy2": 2,
    "legacy1": 1,
}


def load_from_file(path=None):
    """
    Build a config dict from the defaults and any INI files found.

    Args:
        path: Optional extra config file, read after the default locations.

    Returns:
        Dict of config keys to string values.
    """
    parser = configparser.ConfigParser()
    parser.read_dict({SECTION: DEFAULTS})

    files = list(paths)
    if path:
        files.append(path)
    found = parser.read(files)
    for f in found:
        logger.info(f"Loaded config from {f}")

    return dict(parser[SECTION])


def load_from_env(conf):
    """Override config values from ANKIPKG_* environment variables."""
    logger.debug("Loading/overriding config values from ENV")
    for env in os.environ:
        if env.startswith(ENV_PREFIX):
            config_key = env[len(ENV_PREFIX):].lower()
            conf[config_key] = os.getenv(env)
            logger.info(f"Setting {config_key} from ENV")
    return conf


def get_package_version(conf) -> int:
    """Map the `package_version` setting to a PackageVersion value."""
    name = str(conf.get("package_version", "latest")).strip().lower()
    if name.isdigit():
        return int(name)
    try:
        return _VERSION_NAMES[name]
    except KeyError:
        raise ValueError(f"Unknown package_version: {name!r}")


def get_bool(conf, key: str) -> bool:
    return str(conf.get(key, "")).strip().lower() in ("1", "true", "yes", "on")


def get_int(conf, key: str, default: int = 0) -> int:
    value = str(conf.get(key, "")).strip()
    return int(value) if value else default
