import sys
from collections.abc import Iterator

import pytest
from loguru import logger


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    # CLI commands point loguru at the runner's temporary stderr.
    logger.remove()
    logger.add(lambda message: sys.stderr.write(message), level="WARNING")
