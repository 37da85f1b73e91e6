"""Vigil - credential container manager with breach intelligence."""

__version__ = "1.2.0"
__all__ = ["__version__"]


def check_dependencies():
    """Halt with a clear message if a critical dependency is missing."""
    import importlib.util
    import sys

    required = ["cryptography", "argon2", "platformdirs", "psutil", "httpx", "zxcvbn"]
    missing = [pkg for pkg in required if importlib.util.find_spec(pkg) is None]
    if missing:
        print("ERROR: Missing dependencies ->", ", ".join(missing))
        print("Install with:  pip install " + " ".join(missing))
        sys.exit(1)
