from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from awaitguard.config import GuardConfig, guard_config_scope
from awaitguard.guard import reset_scopes

pytest_plugins = ["pytester"]


@pytest.fixture(autouse=True)
def _guard_state_fixture():
    reset_scopes()
    with guard_config_scope(GuardConfig()):
        yield
    reset_scopes()
