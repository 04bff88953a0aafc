import pytest

from housie.observability.log import configure_logging


@pytest.fixture(autouse=True, scope="session")
def _structured_logging():
    configure_logging()
