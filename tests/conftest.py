import io

import pytest

from runtime_introspect import Config, InstrumentationContext, Output


@pytest.fixture
def stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def out(stream: io.StringIO) -> Output:
    return Output(stream)


@pytest.fixture
def ctx(stream: io.StringIO):
    context = InstrumentationContext(config=Config(), stream=stream)
    yield context
    context.close()
