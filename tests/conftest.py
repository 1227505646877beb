from __future__ import annotations

from collections.abc import Iterator

import pytest

from daomerge.observability import configure_logging


@pytest.fixture(autouse=True)
def _silence_daomerge_logging() -> Iterator[None]:
    yield
    configure_logging(False)
