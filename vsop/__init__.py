from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

APP_NAME = "vsop"


def get_version() -> str:
    try:
        return version("vsop")
    except PackageNotFoundError:
        return "0.0.0"


def main() -> int:
    from .cli import main as _main

    return _main()


__all__ = ["APP_NAME", "get_version", "main"]
