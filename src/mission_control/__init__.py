"""Top-level package for the mission control orchestration engine."""

from __future__ import annotations

__version__ = "0.1.0"


def build_app(*args: object, **kwargs: object) -> object:
    from .http import build_app as _build_app

    return _build_app(*args, **kwargs)  # type: ignore[arg-type]


def build_engine(*args: object, **kwargs: object) -> object:
    from .engine import build_engine as _build_engine

    return _build_engine(*args, **kwargs)  # type: ignore[arg-type]


__all__ = ["__version__", "build_app", "build_engine"]
