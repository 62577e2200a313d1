"""
Shared test setup.

Makes `inspection_core` importable from a plain checkout and keeps the
cached AWS clients in storage.py from leaking between tests.
"""

import sys
from pathlib import Path

import pytest

# lambda/ holds the package; an editable install makes this a no-op
lambda_dir = Path(__file__).parent.parent
if str(lambda_dir) not in sys.path:
    sys.path.insert(0, str(lambda_dir))

from inspection_core.storage import clear_table_cache  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_aws_clients(monkeypatch):
    """No real region or credentials are needed; every AWS call is mocked."""
    monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-central-1")
    clear_table_cache()
    yield
    clear_table_cache()
