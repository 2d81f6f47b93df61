"""strata — schema version upgrades for a fleet that never stops serving."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("strata")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
