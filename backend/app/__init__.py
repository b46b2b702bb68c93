"""FastAPI application hosting the FreeTalk realtime hub."""

from pathlib import Path
import sys

# The hub core lives in backend/src.
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if SRC_PATH.exists() and str(SRC_PATH) not in sys.path:
    sys.path.append(str(SRC_PATH))
