#!/usr/bin/env python
"""Apply Alembic migrations: `python scripts/run_migrations.py [revision]`.

Runs from the project root so ``alembic.ini`` resolves regardless of the
caller's working directory. Defaults to ``head``.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from alembic.config import main as alembic_main

ROOT_DIR = Path(__file__).resolve().parent.parent


def run(revision: str = "head"):
    os.chdir(ROOT_DIR)
    alembic_main(argv=["-c", str(ROOT_DIR / "alembic.ini"), "upgrade", revision])


if __name__ == "__main__":
    run(sys.argv[1] if len(sys.argv) > 1 else "head")
