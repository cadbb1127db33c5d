import os
import tempfile

# Settings and the module-level engine are built on first import, so the
# environment has to be in place before any project module is loaded.
os.environ.setdefault("BOARDING_DATA_DIR", tempfile.mkdtemp(prefix="boarding-tests-"))
os.environ.setdefault("BOARDING_DATABASE_URL", "sqlite://")
