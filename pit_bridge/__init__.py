"""pit-bridge — Hypixel Pit chat to Discord bridge."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pit-bridge")
except PackageNotFoundError:
    __version__ = "0.0.0"
