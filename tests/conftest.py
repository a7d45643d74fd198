import os
import shutil
import tempfile

# Point the application data folder at a scratch directory before any test
# module imports core.app_paths.
_APP_HOME = tempfile.mkdtemp(prefix="cableledger-tests-")
os.environ["CABLELEDGER_HOME"] = _APP_HOME


def pytest_unconfigure(config):
    shutil.rmtree(_APP_HOME, ignore_errors=True)
