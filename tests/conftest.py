# Shared fixtures for lmbridge tests.
# Created: 2026-10-18

import logging

import pytest

from fakes import ScriptedProvider, make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def debug_logs(caplog):
    caplog.set_level(logging.DEBUG, logger="lmbridge")
    return caplog
