import os

import pytest

PYQT_ENV = "PYQT_TESTS"


def pytest_configure(config):
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")


def pytest_runtest_setup(item):
    if item.get_closest_marker("pyqt_required") and not os.getenv(PYQT_ENV):
        pytest.skip(f"{PYQT_ENV} not set; skipping panel test that needs a Qt platform")
