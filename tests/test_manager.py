import asyncio
import logging

import pytest

from liveatc_client.channel import ChannelManager, run_tick_loop
from liveatc_client.sink import AudioOutputService

from tests.conftest import ATIS, GROUND, TOWER
from tests.doubles import FakeSink, settle


@pytest.fixture
def devices():
    return [("alsa_output.pci", "Built-in Audio")]


@pytest.fixture
def manager(settings, sim, directory, clock, recorder, devices):
    service = AudioOutputService(settings.volume, settings.mute, device_lister=lambda: devices)
    return ChannelManager(settings, sim, directory=directory, service=service,
                          sink_factory=FakeSink, notify=recorder, clock=clock)


def all_sinks(manager):
    return [slot.sink for channel in manager.channels for slot in (channel.curr, channel.prev)]


async def tick_and_settle(manager):
    await manager.tick()
    for channel in manager.channels:
        await settle(channel)


class TestChannelManager:

    def test_one_sink_pair_per_com(self, manager):
        assert len(manager.channels) == 2
        assert sorted(sink.name for sink in all_sinks(manager)) == ["COM1A", "COM1B", "COM2A", "COM2B"]
        assert len(manager.service.sinks) == 4

    def test_follows_both_radios(self, manager, sim, directory):
        sim.set_tuned(0, TOWER)
        sim.set_tuned(1, GROUND)
        asyncio.run(tick_and_settle(manager))

        assert [channel.curr.summary() for channel in manager.channels] == ["KAAA Tower", "KBBB Ground"]
        assert sorted(directory.queries) == [TOWER, GROUND]

    def test_disabled_com_is_left_alone_and_cleared(self, manager, settings, sim, directory):
        settings.act_on_com = [True, False]
        sim.set_tuned(0, TOWER)
        sim.set_tuned(1, GROUND)

        async def scenario():
            await tick_and_settle(manager)
            assert not manager.channels[1].is_defined()
            settings.act_on_com = [False, False]
            await tick_and_settle(manager)

        asyncio.run(scenario())
        assert directory.queries == [TOWER]
        assert not manager.channels[0].is_defined()
        assert not any(sink.is_playing() for sink in all_sinks(manager))

    @pytest.mark.parametrize("prefer, host_atis", [(True, False), (False, True)])
    def test_host_atis_gives_way_to_stream_atis(self, manager, settings, sim, prefer, host_atis):
        settings.prefer_liveatc_atis = prefer
        sim.set_tuned(0, ATIS)

        async def scenario():
            await tick_and_settle(manager)
            await manager.tick()

        asyncio.run(scenario())
        assert manager.channels[0].is_atis_playing()
        assert sim.sim_atis_enabled is host_atis

    def test_host_atis_comes_back_when_tuning_away(self, manager, sim):
        sim.set_tuned(0, ATIS)

        async def scenario():
            await tick_and_settle(manager)
            await manager.tick()
            assert not sim.sim_atis_enabled
            sim.set_tuned(0, TOWER)
            await tick_and_settle(manager)
            await manager.tick()

        asyncio.run(scenario())
        assert sim.sim_atis_enabled

    def test_global_volume_and_mute(self, manager):
        manager.set_all_volume(40)
        assert [sink.volume for sink in all_sinks(manager)] == [40] * 4
        manager.set_all_volume(150)
        assert manager.service.volume == 100
        assert [sink.volume for sink in all_sinks(manager)] == [100] * 4

        manager.mute_all(True)
        assert all(sink.muted for sink in all_sinks(manager))
        manager.mute_all(False)
        assert not any(sink.muted for sink in all_sinks(manager))

    def test_audio_select_mutes_the_deselected_com(self, manager, settings, sim):
        settings.respect_audio_select = True
        asyncio.run(manager.tick())
        assert [channel.curr.sink.muted for channel in manager.channels] == [False, True]

        sim.toggle_audio_select(1)
        asyncio.run(manager.tick())
        assert [channel.curr.sink.muted for channel in manager.channels] == [False, False]

    def test_output_device_goes_to_every_sink(self, manager):
        manager.set_all_audio_device("alsa_output.usb")
        assert {sink.device_id for sink in all_sinks(manager)} == {"alsa_output.usb"}

    def test_output_devices_are_refreshed_on_schedule(self, settings, sim, directory, devices):
        settings.device_refresh_every = 2
        service = AudioOutputService(device_lister=lambda: devices)
        manager = ChannelManager(settings, sim, directory=directory, service=service, sink_factory=FakeSink)

        asyncio.run(manager.tick())
        assert service.devices == []
        asyncio.run(manager.tick())
        assert service.devices == devices

    def test_snapshot(self, manager, sim):
        sim.set_tuned(0, TOWER)
        sim.set_standby(0, GROUND)
        asyncio.run(tick_and_settle(manager))

        com1, com2 = manager.snapshot()
        assert com1["com"] == 1
        assert com1["frequency"] == "118.300"
        assert com1["standby"] == "121.900"
        assert com1["status"] == "playing"
        assert com1["stream"] == "KAAA Tower"
        assert com1["prev"] == ""
        assert com2["status"] == "no frequency"
        assert com2["stream"] == ""

    def test_shutdown_stops_everything(self, manager, sim, directory):
        sim.set_tuned(0, TOWER)

        async def scenario():
            await tick_and_settle(manager)
            sinks = all_sinks(manager)
            await manager.shutdown()
            return sinks

        sinks = asyncio.run(scenario())
        assert not any(sink.is_playing() for sink in sinks)
        assert manager.service.sinks == []
        assert directory.closed


class TestAudioOutputService:

    def test_register_applies_the_selected_device(self):
        service = AudioOutputService(device_id="alsa_output.usb", device_lister=lambda: [])
        sink = service.register(FakeSink())
        assert sink.device_id == "alsa_output.usb"

    def test_volume_is_clamped(self):
        service = AudioOutputService(device_lister=lambda: [])
        service.set_volume(-5)
        assert service.volume == 0
        service.set_volume("70")
        assert service.volume == 70

    def test_failing_device_listing_keeps_the_known_devices(self, caplog, devices):
        answers = [devices]

        def lister():
            if not answers:
                raise OSError("connection refused")
            return answers.pop()

        service = AudioOutputService(device_lister=lister)
        assert service.update_output_devices() == devices
        with caplog.at_level(logging.WARNING):
            assert service.update_output_devices() == devices
        assert "Could not list audio output devices" in caplog.text


class TestTickLoop:

    def test_ticks_until_told_to_stop(self):
        ticks = []

        async def tick():
            ticks.append(asyncio.get_running_loop().time())

        asyncio.run(run_tick_loop(tick, lambda: len(ticks) < 3, interval=0.01))
        assert len(ticks) == 3
        assert ticks == sorted(ticks)

    def test_overrunning_ticks_never_overlap(self):
        running = []
        overlaps = []

        async def tick():
            if running:
                overlaps.append(True)
            running.append(True)
            await asyncio.sleep(0.03)
            running.pop()

        calls = []

        def keep_running():
            calls.append(None)
            return len(calls) <= 3

        asyncio.run(run_tick_loop(tick, keep_running, interval=0.01))
        assert overlaps == []
        assert len(calls) == 4
