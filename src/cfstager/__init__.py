"""
cfstager - stage an application into a runnable container image.

The package drives the Cloud Foundry buildpack lifecycle (builder, then
launcher) inside throwaway containers and commits the result as a new image.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cfstager")
except PackageNotFoundError:  # pragma: no cover - fallback for source checkouts
    __version__ = "0.0.0"

__all__ = ["__version__"]
