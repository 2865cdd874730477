import sys
from pathlib import Path
import os


# Ensure the repository root is importable as a package root (so `import app` works).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Tests never touch a real database or a background notification pool unless they ask for one.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("APPROVALS_NOTIFICATIONS_ASYNC", "false")
