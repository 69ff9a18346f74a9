"""Shared pytest fixtures and test configuration."""

import os
import socket
import sys
import tempfile

import pytest

# Ensure repo root is on sys.path
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# Keep config, logs and certificates out of the user's home directory
os.environ.setdefault("PAPER_READER_PROXY_HOME", tempfile.mkdtemp(prefix="paper_reader_proxy_test_"))


@pytest.fixture
def config(tmp_path):
    """ConfigManager backed by a throwaway config file."""
    from core.config_manager import ConfigManager

    return ConfigManager(tmp_path / "config.json")


@pytest.fixture
def free_port():
    """A TCP port on 127.0.0.1 that nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
