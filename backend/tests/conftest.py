import sys
from pathlib import Path

TESTS_ROOT = Path(__file__).resolve().parent
BACKEND_ROOT = TESTS_ROOT.parent

# qwen_backend lives in backend/; shared fakes live next to the tests.
for path in (str(BACKEND_ROOT), str(TESTS_ROOT)):
    if path not in sys.path:
        sys.path.insert(0, path)
