#!/usr/bin/env python
"""Launch the dashboard app without requiring installation."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import uvicorn


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_path = repo_root / "src"
    if str(src_path) not in sys.path:
        sys.path.insert(0, str(src_path))

    level = os.environ.get("RESULTS_ENGINE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        "dashboard.app:create_app",
        host=os.environ.get("RESULTS_ENGINE_HOST", "0.0.0.0"),
        port=int(os.environ.get("RESULTS_ENGINE_PORT", "8000")),
        factory=True,
        log_level=level.lower(),
    )


if __name__ == "__main__":
    main()
