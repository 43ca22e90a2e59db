import pytest

from tests.helpers import make_account


@pytest.fixture
def scenario_a_accounts():
    return [
        make_account("Vote1", 1000, 1032, 500),
        make_account("Vote2", 1000, 1032, 500),
        make_account("Vote3", 990, 1020, 300),
    ]
