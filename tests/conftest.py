# SPDX-License-Identifier: LGPL-3.0-or-later
import os
import sys
from pathlib import Path

import pytest

_THIS_DIR = Path(__file__).resolve().parent
_REPO_ROOT = _THIS_DIR.parent

if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))
if str(_THIS_DIR) not in sys.path:
    sys.path.insert(0, str(_THIS_DIR))

os.environ.setdefault("PYTHONPATH", str(_REPO_ROOT))

from fakes.fake_logger import FakeLogger  # noqa: E402
from fakes.fake_process import FakeProcessControl  # noqa: E402


@pytest.fixture
def fake_logger():
    return FakeLogger()


@pytest.fixture
def fake_process():
    return FakeProcessControl()


@pytest.fixture
def no_sleep():
    slept = []
    return slept.append, slept
