"""Build test configurations for the image cache manager."""

from __future__ import annotations

from pathlib import Path

from imagecache.config import Config

__all__ = ["config_path", "configure"]


def config_path(name: str) -> Path:
    """Return the path to a test configuration file.

    Parameters
    ----------
    name
        Name of the configuration, without the ``.yaml`` extension.
    """
    return Path(__file__).parent.parent / "data" / "config" / f"{name}.yaml"


def configure(name: str) -> Config:
    """Load a test configuration.

    Parameters
    ----------
    name
        Name of the configuration, without the ``.yaml`` extension.

    Returns
    -------
    Config
        Parsed configuration.
    """
    return Config.from_file(config_path(name))
