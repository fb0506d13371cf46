import pytest

from test_qrsignal import CaseResult


@pytest.fixture
def r(request):
    """Per-test result holder; tests may set r.message."""
    return CaseResult(request.node.name)
