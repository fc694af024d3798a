"""Pytest bootstrap for local module imports.

The ``pytest`` console script can run with a sys.path that excludes the
repository root. Ensure ``import vercel_mirror`` resolves to the local module.
"""

from __future__ import annotations

import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent
PROJECT_ROOT_STR = str(PROJECT_ROOT)

if PROJECT_ROOT_STR not in sys.path:
    sys.path.insert(0, PROJECT_ROOT_STR)
