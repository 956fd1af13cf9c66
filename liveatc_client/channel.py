# =============================================================================
# COM Channels
# =============================================================================
# A ComChannel follows one COM radio. It owns two stream slots: `curr`
# plays the active frequency, `prev` either lets the previous stream run
# out its desync period or pre-buffers the standby frequency. The slots
# swap roles on a frequency change; their sinks are never re-created.
#
# All methods run on the controller's event loop thread. Ticks are
# awaited one after the other, so only the resolve-and-play task runs
# concurrently with a tick, and at most one such task exists per channel.
# =============================================================================

import asyncio
import enum
import logging
import time

from .directory import CandidateSet, StreamDirectory, is_playlist, select_closest
from .errors import NetworkFailure, NoCandidateInRange, PlaybackStartFailure
from .geo import frequency_text
from .settings import COM_COUNT
from .sink import AudioOutputService, FfplaySink

logger = logging.getLogger(__name__)

# --- Channel Timing ---
TICK_INTERVAL_SECONDS = 1.0         # Driver loop period
ADD_COUNTDOWN_DELAY_S = 1           # Allowance for query and buffering in the first countdown
PLAYBACK_START_TIMEOUT = 10.0       # Max wait for a started stream to deliver audio
PLAYBACK_POLL_INTERVAL = 0.25


class StreamStatus(enum.IntEnum):
    """Slot and channel states; checks compare with >=, so the order matters."""
    NOT_INITIALIZED = 0
    NO_FREQUENCY = 1
    NOT_PLAYING = 2
    SEARCHING = 3
    BUFFERING = 4
    DESYNCING = 5
    MUTED = 6
    PLAYING = 7

    def __str__(self):
        return self.name.lower().replace("_", " ")


class TickSchedule:
    """Fires on every `every`-th call of due()."""

    def __init__(self, every):
        if every < 1:
            raise ValueError(f"every must be at least 1, got {every}")
        self.every = every
        self.count = 0

    def due(self):
        self.count += 1
        if self.count >= self.every:
            self.count = 0
            return True
        return False


# =============================================================================
# Stream Slot
# =============================================================================

class StreamSlot:
    """One sink plus what it is tuned to, what it plays and its desync countdown."""

    def __init__(self, sink, name="", clock=time.monotonic):
        self.sink = sink
        self.name = name
        self.clock = clock

        self.frequency = 0                 # kHz, 0 = undefined
        self.candidates = CandidateSet()   # Result of the last query for `frequency`
        self.candidate = None              # Stream picked from `candidates`
        self.loaded = False                # Candidate handed to the sink
        self.desync_deadline = None        # clock() value the countdown ends at
        self.standby_prebuf = False        # Pre-buffering the standby frequency
        self.volume = None                 # Last volume applied to the sink
        self.muted = None                  # Last mute state applied to the sink

    @property
    def frequency_text(self):
        return frequency_text(self.frequency)

    def is_defined(self):
        return self.frequency != 0

    # --- Desync Countdown ---

    def start_desync(self, seconds):
        self.desync_deadline = self.clock() + seconds if seconds > 0 else None

    def clear_desync(self):
        self.desync_deadline = None

    def is_desyncing(self):
        return self.desync_deadline is not None and self.clock() < self.desync_deadline

    def desync_remaining(self):
        if not self.is_desyncing():
            return 0
        return self.desync_deadline - self.clock()

    # --- Status ---

    def status(self):
        if self.sink is None:
            return StreamStatus.NOT_INITIALIZED
        if self.sink.is_playing():
            status = StreamStatus.PLAYING
        elif self.loaded:
            status = StreamStatus.BUFFERING
        elif not self.is_defined():
            return StreamStatus.NO_FREQUENCY
        else:
            return StreamStatus.NOT_PLAYING

        if self.is_desyncing():
            return StreamStatus.DESYNCING
        if status == StreamStatus.PLAYING and self.muted:
            return StreamStatus.MUTED
        return status

    # --- Changes ---

    def set_frequency(self, khz):
        self.frequency = khz
        self.candidates = CandidateSet()
        self.candidate = None

    def load(self, url):
        self.sink.load(url)
        self.loaded = True

    def reset_stream(self):
        """Stops playback; frequency and the cached candidates stay."""
        if self.sink is not None:
            self.sink.stop()
        self.candidate = None
        self.loaded = False
        self.desync_deadline = None

    def stop_and_clear(self):
        """Stops playback and forgets the frequency."""
        self.reset_stream()
        self.frequency = 0
        self.candidates = CandidateSet()
        self.standby_prebuf = False

    def apply_volume_mute(self, volume, muted):
        """Passes volume and mute on to the sink, if they changed."""
        if self.sink is None:
            return
        if volume != self.volume:
            self.sink.set_volume(volume)
            self.volume = volume
        if muted != self.muted:
            self.sink.set_mute(muted)
            self.muted = muted

    def summary(self):
        if self.candidate is not None:
            return self.candidate.summary()
        return self.frequency_text

    def debug_status(self):
        text = f"{self.name}: {self.frequency_text or '-'} {self.status()}"
        if self.candidate is not None:
            text += f" '{self.candidate.summary()}'"
        if self.standby_prebuf:
            text += " (pre-buffering)"
        if self.is_desyncing():
            text += f" {self.desync_remaining():.0f}s left"
        return text


# =============================================================================
# COM Channel
# =============================================================================

class ComChannel:
    """Follows the frequencies of one COM radio with two stream slots."""

    def __init__(self, idx, sinks, service, directory, sim, settings,
                 clock=time.monotonic, schedule=None, notify=None):
        self.idx = idx
        self.service = service
        self.directory = directory
        self.sim = sim
        self.settings = settings
        self.schedule = schedule or TickSchedule(settings.maintenance_every)
        self.notify = notify

        sink_a, sink_b = sinks
        self.curr = StreamSlot(sink_a, f"COM{self.com}/A", clock)
        self.prev = StreamSlot(sink_b, f"COM{self.com}/B", clock)

        self.task = None               # Outstanding resolve-and-play task
        self._task_standby = False     # Whether `task` works on the standby slot
        self._starting = False         # Set while a task body runs
        self.init_standby = None       # Standby frequency that must not be pre-buffered
        self.last_standby = None       # Standby frequency seen on the previous tick

    @property
    def com(self):
        return self.idx + 1

    def __repr__(self):
        return f"<ComChannel COM{self.com} {self.curr.debug_status()} | {self.prev.debug_status()}>"

    # --- Messages ---

    def _announce(self, msg):
        logger.info(msg)
        if self.notify:
            self.notify("status", msg)

    def _report_error(self, msg):
        logger.error(msg)
        if self.notify:
            self.notify("error", msg)

    # --- Helpers ---

    def desync_period(self):
        return self.settings.desync_period(self.sim.external_buffer_period())

    def is_defined(self):
        return self.curr.is_defined() or self.prev.is_defined()

    def is_starting(self):
        return self._starting

    def task_running(self):
        return self.task is not None and not self.task.done()

    def _prev_is_fading(self):
        return self.prev.is_defined() and not self.prev.standby_prebuf

    def _closest(self, slot):
        return select_closest(slot.candidates, self.sim.get_listener_position(),
                              self.settings.max_radio_dist_nm, self.sim.lookup_position)

    def is_atis_playing(self):
        slot = self.curr
        return (slot.candidate is not None and slot.candidate.is_atis
                and slot.status() >= StreamStatus.BUFFERING)

    def get_status(self):
        status = self.curr.status()
        if (status == StreamStatus.NOT_PLAYING and self.task_running()
                and not self._task_standby):
            return StreamStatus.SEARCHING
        return status

    def set_volume_mute(self):
        for slot in (self.curr, self.prev):
            self._apply_volume_mute(slot)

    def _apply_volume_mute(self, slot):
        muted = (self.service.muted or slot.standby_prebuf or
                 (self.settings.respect_audio_select and not self.sim.is_com_selected(self.idx)))
        slot.apply_volume_mute(self.service.volume, muted)

    # --- Background Task ---

    async def _abort_and_wait(self):
        task, self.task = self.task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _spawn_start(self, standby):
        self._task_standby = standby
        self.task = asyncio.create_task(
            self._start_stream(self.prev if standby else self.curr, standby),
            name=f"COM{self.com}_{'standby' if standby else 'start'}")
        return self.task

    async def start_stream_async(self, standby=False):
        """Starts resolve-and-play for a slot, cancelling and awaiting any previous task first."""
        await self._abort_and_wait()
        return self._spawn_start(standby)

    async def _wait_until_playing(self, slot):
        waited = 0.0
        while not slot.sink.is_playing():
            if waited >= PLAYBACK_START_TIMEOUT:
                logger.warning("%s: '%s' did not start within %.0fs",
                               slot.name, slot.summary(), PLAYBACK_START_TIMEOUT)
                return False
            await asyncio.sleep(PLAYBACK_POLL_INTERVAL)
            waited += PLAYBACK_POLL_INTERVAL
        return True

    def _abort_after_network_failure(self, slot, standby, err):
        logger.warning("%s: %s", slot.name, err)
        if standby:
            # Don't try the same standby frequency again before it changes
            self.init_standby = slot.frequency
            slot.stop_and_clear()
        else:
            slot.reset_stream()
            slot.candidates = CandidateSet()

    async def _start_stream(self, slot, standby):
        """Resolves the slot's frequency to the closest stream and plays it."""
        self._starting = True
        try:
            # --- Find the Stream ---
            if slot.candidate is None:
                slot.candidates = await self.directory.resolve(slot.frequency)
                closest = self._closest(slot)
                if closest is None:
                    raise NoCandidateInRange("no stream for %s within %.0fnm" %
                                             (slot.frequency_text, self.settings.max_radio_dist_nm))
                slot.candidate = closest[0]
            candidate = slot.candidate

            period = self.desync_period()
            if standby:
                self._announce("COM%d stand-by is now %s, pre-buffering '%s' with %ds delay" %
                               (self.com, slot.frequency_text, candidate.summary(), period))
            elif period > 0:
                self._announce("COM%d is now %s, tuning to '%s' with %ds delay" %
                               (self.com, slot.frequency_text, candidate.summary(), period))
            else:
                self._announce("COM%d is now %s, tuning to '%s'" %
                               (self.com, slot.frequency_text, candidate.summary()))

            # --- Follow the Playlist ---
            url = candidate.url
            if is_playlist(url):
                url = await self.directory.resolve_playlist(url) or url

            # --- Play ---
            slot.load(url)
            self._apply_volume_mute(slot)
            if not await slot.sink.play():
                raise PlaybackStartFailure("player did not start")
            slot.sink.set_audio_delay(period)

            # The countdown restarts once audio actually flows
            if await self._wait_until_playing(slot):
                slot.start_desync(period)
                if not standby and self._prev_is_fading():
                    self.prev.desync_deadline = slot.desync_deadline

        except NetworkFailure as e:
            self._abort_after_network_failure(slot, standby, e)
        except NoCandidateInRange as e:
            logger.debug("%s: %s", slot.name, e)
            slot.clear_desync()
        except PlaybackStartFailure as e:
            self._report_error("Could not play '%s': %s" % (slot.candidate.summary(), e))
            slot.clear_desync()
        except asyncio.CancelledError:
            slot.reset_stream()
            raise
        finally:
            self._starting = False

    # --- Slot Swapping ---

    def _turn_curr_to_prev(self):
        """Makes the active slot the displaced one, leaving `curr` free for a new stream."""
        if self.prev.is_defined():
            self.prev.stop_and_clear()
        self.curr, self.prev = self.prev, self.curr
        vacated = self.prev
        if vacated.is_defined():
            self.init_standby = vacated.frequency

        # The vacated stream only runs on to bridge a desync wait
        if (vacated.status() < StreamStatus.BUFFERING or self.desync_period() <= 0
                or not self.settings.prev_frequ_runs_til_desync):
            vacated.stop_and_clear()

    def _start_countdown(self):
        """Optimistic countdown for a stream about to start; the fading slot follows it."""
        period = self.desync_period()
        if period > 0:
            self.curr.start_desync(period + ADD_COUNTDOWN_DELAY_S)
        if self._prev_is_fading():
            self.prev.desync_deadline = self.curr.desync_deadline

    async def _hand_over_standby(self):
        await self._abort_and_wait()
        self.curr, self.prev = self.prev, self.curr
        self.curr.standby_prebuf = False
        self.curr.clear_desync()
        if self.prev.is_defined():
            self.init_standby = self.prev.frequency
        self.prev.stop_and_clear()
        self._announce("COM%d is now %s, tuning to '%s'" %
                       (self.com, self.curr.frequency_text, self.curr.summary()))
        self.set_volume_mute()

    async def _change_frequency(self, tuned):
        await self._abort_and_wait()
        self._turn_curr_to_prev()
        self.curr.set_frequency(tuned)
        if tuned:
            self._start_countdown()
            self._spawn_start(standby=False)
        elif self._prev_is_fading():
            self.prev.clear_desync()
        self.set_volume_mute()

    def _retarget_active(self, candidate):
        """
        Moves the active frequency over to a closer airport's stream.

        Goes through the same swap as a frequency change, so a standby
        pre-buffer is released and the old stream bridges the desync wait.
        Both slots then hold the same frequency until that wait is over;
        the displaced one is told apart by not pre-buffering.
        """
        khz, candidates = self.curr.frequency, self.curr.candidates
        self._announce("COM%d: Tuning to '%s' as this is closest now" % (self.com, candidate.summary()))
        self._turn_curr_to_prev()
        self.curr.frequency = khz
        self.curr.candidates = candidates
        self.curr.candidate = candidate
        self._start_countdown()
        self._spawn_start(standby=False)

    def _retarget_standby(self, candidate):
        self._announce("COM%d stand-by: Tuning to '%s' as this is closest now" %
                       (self.com, candidate.summary()))
        self.prev.reset_stream()
        self.prev.candidate = candidate
        self.prev.start_desync(self.desync_period() + ADD_COUNTDOWN_DELAY_S)
        self._spawn_start(standby=True)

    # --- Throttled Maintenance ---

    def _check_standby_prebuf(self, standby, standby_stable):
        period = self.desync_period()
        if not self.settings.prebuffer_standby or period <= 0:
            return
        if not standby or standby == self.init_standby or not standby_stable:
            return
        if standby == self.curr.frequency:
            return
        if self.prev.standby_prebuf and self.prev.frequency == standby:
            return  # Already on it
        if self.task_running() or self._prev_is_fading():
            return

        if self.prev.standby_prebuf:
            logger.debug("%s: releasing pre-buffer of %s", self.prev.name, self.prev.frequency_text)
            self.prev.stop_and_clear()
        self.prev.set_frequency(standby)
        self.prev.standby_prebuf = True
        self.prev.start_desync(period + ADD_COUNTDOWN_DELAY_S)
        self._spawn_start(standby=True)

    def _check_range(self, slot, standby):
        """Stops a stream that went out of reach, or re-targets a closer one."""
        if slot.candidate is None or not slot.loaded or self.task_running():
            return
        closest = self._closest(slot)
        if closest is None:
            if standby:
                self._announce("COM%d stand-by: '%s' now out of reach" % (self.com, slot.summary()))
            else:
                self._announce("COM%d: '%s' now out of reach" % (self.com, slot.summary()))
            slot.reset_stream()
            return

        candidate = closest[0]
        if candidate is slot.candidate:
            return
        if standby:
            self._retarget_standby(candidate)
        elif not self._prev_is_fading():
            self._retarget_active(candidate)

    def _check_restart(self, slot, standby):
        """Starts a slot that has a frequency but plays nothing, if a cached stream is in reach."""
        if slot.loaded and slot.sink.has_finished() and not self.task_running():
            logger.info("%s: stream of '%s' ended", slot.name, slot.summary())
            slot.reset_stream()
        if slot.status() != StreamStatus.NOT_PLAYING or not len(slot.candidates):
            return
        if self.task_running():
            return
        closest = self._closest(slot)
        if closest is None:
            return
        slot.candidate = closest[0]
        if standby:
            slot.start_desync(self.desync_period() + ADD_COUNTDOWN_DELAY_S)
        self._spawn_start(standby)

    def _maintenance(self, standby, standby_stable):
        self._check_standby_prebuf(standby, standby_stable)
        self._check_range(self.curr, standby=False)
        self._check_restart(self.curr, standby=False)
        if self.prev.standby_prebuf:
            self._check_range(self.prev, standby=True)
            self._check_restart(self.prev, standby=True)

    # --- Public Operations ---

    async def on_tick(self, tuned, standby):
        """Per-second update with the radio's active and standby frequency."""
        standby_stable = standby == self.last_standby
        self.last_standby = standby
        if self.init_standby is None:
            self.init_standby = standby

        # 1. Free the displaced slot once its stream has run out
        if self._prev_is_fading() and not self.prev.is_desyncing():
            logger.debug("Stopping playback of '%s' (%s)", self.prev.summary(), self.prev.name)
            self.prev.stop_and_clear()

        # 2. Frequency change
        if tuned != self.curr.frequency:
            # A pre-buffer still being started is dropped for a cold change
            if (self.prev.standby_prebuf and self.prev.frequency == tuned
                    and not self.prev.is_desyncing() and self.prev.sink.is_playing()
                    and not (self.task_running() and self._task_standby)):
                await self._hand_over_standby()
            else:
                await self._change_frequency(tuned)
            return

        # 3. Volume and mute may have changed globally
        self.set_volume_mute()

        # 4. Network-capable checks, not every second
        if self.schedule.due():
            self._maintenance(standby, standby_stable)

    async def clear(self):
        """Stops both slots, cancelling any outstanding task first."""
        await self._abort_and_wait()
        for slot in (self.curr, self.prev):
            if slot.is_defined() or slot.loaded:
                logger.debug("Stopping playback of '%s' (%s)", slot.summary(), slot.name)
            slot.stop_and_clear()


# =============================================================================
# Channel Manager
# =============================================================================

class ChannelManager:
    """
    Owns the COM channels and the resources they share: the audio output
    service and the stream directory.
    """

    def __init__(self, settings, sim, directory=None, service=None, sink_factory=FfplaySink,
                 notify=None, clock=time.monotonic, com_count=COM_COUNT):
        self.settings = settings
        self.sim = sim
        self.directory = directory or StreamDirectory()
        self.service = service or AudioOutputService(settings.volume, settings.mute, settings.audio_device)
        self.device_schedule = TickSchedule(settings.device_refresh_every)
        self.channels = []
        for idx in range(com_count):
            sinks = tuple(self.service.register(sink_factory(f"COM{idx + 1}{ab}")) for ab in "AB")
            self.channels.append(ComChannel(idx, sinks, self.service, self.directory, sim, settings,
                                            clock=clock, notify=notify))

    async def tick(self):
        for channel in self.channels:
            if self.settings.act_on_com[channel.idx]:
                await channel.on_tick(self.sim.get_tuned_frequency(channel.idx),
                                      self.sim.get_standby_frequency(channel.idx))
            elif channel.is_defined():
                await channel.clear()

        atis_playing = any(channel.is_atis_playing() for channel in self.channels)
        self.sim.enable_sim_atis(not (self.settings.prefer_liveatc_atis and atis_playing))

        if self.device_schedule.due():
            await asyncio.to_thread(self.service.update_output_devices)

    # --- Global Audio Commands ---

    def set_all_volume(self, volume):
        self.service.set_volume(volume)
        for channel in self.channels:
            channel.set_volume_mute()

    def mute_all(self, muted):
        self.service.set_mute(muted)
        for channel in self.channels:
            channel.set_volume_mute()

    def set_all_audio_device(self, device_id):
        self.service.set_all_audio_device(device_id)

    def snapshot(self):
        """Per-channel state for display."""
        return [{
            "com": channel.com,
            "frequency": channel.curr.frequency_text,
            "standby": frequency_text(self.sim.get_standby_frequency(channel.idx)),
            "status": str(channel.get_status()),
            "stream": channel.curr.summary() if channel.curr.candidate else "",
            "desync": round(channel.curr.desync_remaining()),
            "prev": channel.prev.debug_status() if channel.prev.is_defined() else "",
        } for channel in self.channels]

    async def shutdown(self):
        for channel in self.channels:
            await channel.clear()
        self.service.close()
        await self.directory.close()


async def run_tick_loop(tick, keep_running, interval=TICK_INTERVAL_SECONDS):
    """
    Awaits `tick()` every `interval` seconds while `keep_running()` is true.

    Ticks never overlap; a tick that overruns its slot makes the loop skip
    the slots it missed rather than catching up.
    """
    loop = asyncio.get_running_loop()
    next_due = loop.time()
    while keep_running():
        await tick()
        next_due += interval
        now = loop.time()
        if now > next_due:
            missed = int((now - next_due) // interval) + 1
            logger.debug("Tick overran, skipping %d tick(s)", missed)
            next_due += missed * interval
        await asyncio.sleep(next_due - now)
