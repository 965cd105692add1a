"""
ASGI entrypoint for deployments.

The FastAPI app lives in `backend/app/main.py` and imports itself as `app.*`,
so `backend/` has to be on the import path. From the repo root:

  uvicorn main:app --host 0.0.0.0 --port $PORT
"""

from __future__ import annotations

import sys
from pathlib import Path


_BACKEND_DIR = Path(__file__).resolve().parent / "backend"

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from app.main import app  # noqa: E402,F401
