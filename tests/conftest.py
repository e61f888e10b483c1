# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the conftest unit so this responsibility stays isolated, testable, and easy to evolve."""

import os
import tempfile
import pytest
from pathlib import Path

# Global temporary directory for the whole test session
# This acts as a safety net to prevent tests from writing to the real state file
# if an individual test forgets to inject its own persistence.
_SESSION_TEMP_DIR = None

_REDIRECTED = ("LLMC_STATE_PATH", "LLMC_LLM_DUMP", "LLMC_LLM_DUMP_PATH")


@pytest.fixture(scope="session", autouse=True)
def session_temp_env():
    global _SESSION_TEMP_DIR
    _SESSION_TEMP_DIR = tempfile.TemporaryDirectory(prefix="llmc_test_session_")

    # Store originals
    originals = {name: os.environ.get(name) for name in _REDIRECTED}

    # Set session-wide defaults
    os.environ["LLMC_STATE_PATH"] = str(Path(_SESSION_TEMP_DIR.name) / "state.json")
    os.environ.pop("LLMC_LLM_DUMP", None)
    os.environ.pop("LLMC_LLM_DUMP_PATH", None)

    yield

    # Clean up
    if _SESSION_TEMP_DIR:
        _SESSION_TEMP_DIR.cleanup()

    # Restore originals if they were there
    for name, value in originals.items():
        if value is not None:
            os.environ[name] = value
        else:
            os.environ.pop(name, None)
