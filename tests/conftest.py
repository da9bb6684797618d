import os
import tempfile

# Must run before `config` is imported anywhere
os.environ.setdefault("APICANVAS_DATA_DIR", tempfile.mkdtemp(prefix="apicanvas-tests-"))
os.environ.setdefault("APICANVAS_SAVE_DEBOUNCE", "0.05")
