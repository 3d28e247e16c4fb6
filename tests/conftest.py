"""Pytest configuration.

The packages are importable without an editable install. `pytest` may still
run without the repository root on `sys.path`, which breaks imports like
`import ob_core...` and the shared fixtures in `tests._book`.

This file ensures the repository root is importable.
"""

from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
