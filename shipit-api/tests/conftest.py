import sys
from pathlib import Path


# Ensure shipit-api is on sys.path for tests that import modules directly.
SHIPIT_API_DIR = Path(__file__).resolve().parents[1]
if str(SHIPIT_API_DIR) not in sys.path:
    sys.path.insert(0, str(SHIPIT_API_DIR))
