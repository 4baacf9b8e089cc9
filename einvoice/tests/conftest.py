import pytest


@pytest.fixture
def anyio_backend():
    # The pipeline uses asyncio primitives directly
    return "asyncio"
