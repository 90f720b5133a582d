import asyncio
import textwrap

import pytest

from appsupervisor.config import Config
from appsupervisor.descriptor import AppDescriptor
from appsupervisor.process import Supervisor

SLEEPER = """
import time
time.sleep(60)
"""


@pytest.fixture
def settings(tmp_path):
    return Config(
        data_dir=tmp_path / "data",
        restart_delay=0.05,
        restart_max_delay=0.5,
        max_restart_attempts=3,
        restart_window=10,
        min_uptime=30,
        kill_timeout=2,
        watch_debounce=0.1,
        output_drain_timeout=0.5,
    )


@pytest.fixture
async def supervisor(settings):
    sup = Supervisor(settings)
    await sup.open()
    yield sup
    await sup.shutdown()


@pytest.fixture
def app_dir(tmp_path):
    path = tmp_path / "app"
    path.mkdir()
    return path


@pytest.fixture
def make_app(app_dir):
    """Write a Python script into the app directory and return a descriptor running it."""

    def make(name="api", body=SLEEPER, **fields):
        script = app_dir / f"{name}.py"
        script.write_text(textwrap.dedent(body))
        return AppDescriptor(name=name, working_directory=app_dir, entry_point=script.name, **fields)

    return make


@pytest.fixture
def wait_until():
    async def wait(predicate, timeout=5.0, interval=0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return wait
