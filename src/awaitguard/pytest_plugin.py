"""pytest integration.

Enable with ``-p awaitguard.pytest_plugin`` or ``pytest_plugins =
["awaitguard.pytest_plugin"]`` in a root ``conftest.py``. Every test then
fails if it leaves a guarded call pending, and the scope stack is reset so
the leak does not bleed into the next test.
"""

from __future__ import annotations

import pytest

from awaitguard.config import load_guard_config, reset_guard_config, set_guard_config
from awaitguard.guard import reset_scopes, verify_all_scopes_closed

_CONFIG_TOKEN = pytest.StashKey[object]()


def pytest_configure(config: pytest.Config) -> None:
    config.stash[_CONFIG_TOKEN] = set_guard_config(load_guard_config(root=config.rootpath))


def pytest_unconfigure(config: pytest.Config) -> None:
    token = config.stash.get(_CONFIG_TOKEN, None)
    if token is not None:
        reset_guard_config(token)
        del config.stash[_CONFIG_TOKEN]


@pytest.fixture(autouse=True)
def _awaitguard_scope_boundary():
    reset_scopes()
    yield
    try:
        verify_all_scopes_closed()
    finally:
        reset_scopes()
