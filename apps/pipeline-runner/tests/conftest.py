"""Test bootstrap for the pipeline runner."""

from __future__ import annotations

import sys
from pathlib import Path

APP_ROOT = Path(__file__).resolve().parents[1]
APPS_DIR = APP_ROOT.parent
DEPENDENCY_ROOTS = tuple(
    APPS_DIR / name
    for name in ("spec-normalizer", "scenario-generator", "execution-orchestrator", "response-validator")
)

for path in (APP_ROOT, *DEPENDENCY_ROOTS):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)
