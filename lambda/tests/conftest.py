import sys
from pathlib import Path

import pytest

# pms_fraud lives directly under lambda/, not in an installed package
sys.path.insert(0, str(Path(__file__).parent.parent))

from pms_fraud import storage  # noqa: E402


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Cached boto3 clients must not leak between tests."""
    storage.clear_table_cache()
    yield
    storage.clear_table_cache()
