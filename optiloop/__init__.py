"""optiloop: autonomous optimization loop and cross-tenant federation."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("optiloop")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
