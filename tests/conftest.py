"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import MockAzureContext  # noqa: E402

from azprofile.models import PUBLIC_ENVIRONMENTS, Environment  # noqa: E402
from azprofile.reconciler import ProfileReconciler  # noqa: E402


@pytest.fixture
def mock_context() -> MockAzureContext:
    """Fresh mocks and session per test."""
    return MockAzureContext(tenants=["tenant-a"])


@pytest.fixture
def reconciler(mock_context: MockAzureContext) -> ProfileReconciler:
    """Reconciler over an empty in-memory profile."""
    return mock_context.build_reconciler()


@pytest.fixture
def azure_cloud() -> Environment:
    return PUBLIC_ENVIRONMENTS["AzureCloud"]
