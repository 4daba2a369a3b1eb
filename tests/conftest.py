import pytest
import pytest_asyncio

from daylight.domain.models import LightState, Scene
from daylight.storage.sqlite_repo import SQLiteRepository

from factories import make_light


@pytest.fixture
def office_target() -> LightState:
    return LightState(brightness=80, temperature_mirek=350, on=True)


@pytest_asyncio.fixture
async def store(tmp_path):
    repo = SQLiteRepository(str(tmp_path / "daylight.db"))
    await repo.init()
    await repo.add_lights([make_light("L1"), make_light("L2")])
    await repo.add_scenes([Scene(id="S1", schedule_name="Office")])
    return repo
