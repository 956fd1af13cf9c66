"""
Shared pytest fixtures.

The listener sits at a fixed point; three airports lie 5, 12 and 40 nm
north of it. Frequencies are served by a FakeDirectory, audio goes to
FakeSinks and time is a FakeClock.
"""

import pytest

from liveatc_client.channel import ComChannel, TickSchedule
from liveatc_client.directory import StreamCandidate
from liveatc_client.geo import AirportGazetteer, Position
from liveatc_client.settings import Settings
from liveatc_client.sim import ManualDataSource
from liveatc_client.sink import AudioOutputService

from tests.doubles import FakeClock, FakeDirectory, FakeSink, Recorder, north_of

TOWER = 118300
GROUND = 121900
ATIS = 127850

LISTENER = Position(37.0, -122.0)


@pytest.fixture
def gazetteer():
    return AirportGazetteer({
        "KAAA": north_of(LISTENER, 5),
        "KBBB": north_of(LISTENER, 12),
        "KCCC": north_of(LISTENER, 40),
    })


@pytest.fixture
def sim(gazetteer):
    return ManualDataSource(LISTENER, gazetteer)


@pytest.fixture
def directory():
    return FakeDirectory({
        TOWER: [
            StreamCandidate("KAAA", "KAAA Tower", "https://example.net/kaaa_twr", 1),
            StreamCandidate("KBBB", "KBBB Tower", "https://example.net/kbbb_twr", 2),
        ],
        GROUND: [StreamCandidate("KBBB", "KBBB Ground", "https://example.net/kbbb_gnd", 1)],
        ATIS: [StreamCandidate("KAAA", "KAAA ATIS", "https://example.net/kaaa_atis", 1)],
    })


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_channel(sim, directory, settings, clock, recorder):
    """Builds COM1 on FakeSinks; `every` sets how often maintenance runs."""
    def _make(every=10, sinks=None):
        service = AudioOutputService(settings.volume, settings.mute,
                                     device_lister=lambda: [])
        sinks = sinks or (FakeSink("A"), FakeSink("B"))
        for sink in sinks:
            service.register(sink)
        return ComChannel(0, sinks, service, directory, sim, settings,
                          clock=clock, schedule=TickSchedule(every), notify=recorder)
    return _make
