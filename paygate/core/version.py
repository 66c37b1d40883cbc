# paygate/core/version.py
"""Version string from a VERSION file or the installed package metadata."""
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path


VERSION_FILE = Path(__file__).parent.parent.parent / "VERSION"


@lru_cache()
def get_version() -> str:
    """
    Priority:
    1. VERSION file (for Docker/production)
    2. Installed distribution metadata
    3. Fallback to 0.0.0-unknown
    """
    if VERSION_FILE.exists():
        text = VERSION_FILE.read_text().strip()
        if text:
            return text

    try:
        return version("paygate")
    except PackageNotFoundError:
        return "0.0.0-unknown"


VERSION = get_version()
