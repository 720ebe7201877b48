"""Punto de entrada: ``python -m glucose_sync``."""

from __future__ import annotations

from glucose_sync.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
