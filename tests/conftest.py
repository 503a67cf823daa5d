"""Shared pytest configuration."""

from __future__ import annotations

import sys
from pathlib import Path

# Make ``app`` and ``zeestream`` importable from a plain checkout.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
