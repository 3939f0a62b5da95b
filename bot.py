"""Convenience entry point for running the card trader bot.

Puts the local ``src`` directory on the import path so that ``python bot.py``
works from a checkout without installing the package first.
"""
from __future__ import annotations

from pathlib import Path
import sys


def _ensure_src_on_path() -> None:
    src_dir = Path(__file__).resolve().parent / "src"
    if src_dir.exists():
        sys.path.insert(0, str(src_dir))


_ensure_src_on_path()
from card_trader.bot import run_bot


if __name__ == "__main__":
    run_bot()
