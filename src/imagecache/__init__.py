"""Node-level image pull and purge manager for Kubernetes image caches."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__ = version("imagecache-manager")
except PackageNotFoundError:
    __version__ = "0.0.0"
