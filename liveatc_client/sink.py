# =============================================================================
# Audio Output
# =============================================================================
# AudioSink is the handle the channels drive. FfplaySink plays a stream by
# fetching it with aiohttp and piping it through a time-shift buffer into
# an 'ffplay' subprocess. AudioOutputService holds the output state all
# sinks share: volume, mute and the selected output device.
# =============================================================================

import abc
import asyncio
import logging
import os
import shutil
import signal
import sys
import time
from collections import deque

import aiohttp

logger = logging.getLogger(__name__)

# --- ffplay Configuration ---
FFPLAY_CMD = [
    "ffplay",
    "-nodisp",                   # Disable video window
    "-autoexit",                 # Exit when stdin closes
    "-loglevel", "error",        # Suppress verbose output
    "-probesize", "32",          # Lower probesize for faster start
    "-analyzeduration", "0",     # Don't analyze duration
    "-fflags", "nobuffer",       # Reduce buffering
    "-flags", "low_delay",       # Prioritize low latency
]
FFPLAY_INPUT = ["-f", "mp3", "-"]  # MP3 from stdin, always last

# --- Stream Relay Configuration ---
STREAM_CHUNK_SIZE = 4096          # Bytes read from the stream per chunk
STREAM_READ_TIMEOUT = 15          # Seconds without data before giving up
PULSE_CLIENT_NAME = "liveatc-client"


def check_command(cmd_name):
    """Checks if an external command exists in the system's PATH."""
    if shutil.which(cmd_name) is None:
        logger.error("Required command '%s' not found in PATH.", cmd_name)
        return False
    return True


def is_unexpected_exit(return_code):
    """Checks if a process exit code signifies an unexpected termination."""
    # None means process is still running, 0 is clean exit
    if return_code is None or return_code == 0:
        return False
    graceful_signals = [-signal.SIGTERM.value]
    if sys.platform != "win32":
        graceful_signals.append(-signal.SIGKILL.value)
    return return_code not in graceful_signals


def kill_process(proc, name="process"):
    """Terminates an asyncio subprocess, falling back to kill. Returns None."""
    if proc is None or proc.returncode is not None:
        return None
    if proc.stdin and not proc.stdin.is_closing():
        proc.stdin.close()
    try:
        proc.terminate()
    except ProcessLookupError:
        pass  # Already gone
    except OSError as e_term:
        logger.warning("Error terminating %s (PID: %s): %s", name, proc.pid, e_term)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    return None


async def _read_process_stderr(proc, name):
    """Logs the error lines a subprocess writes to stderr."""
    while True:
        line_bytes = await proc.stderr.readline()
        if not line_bytes:
            break  # EOF, process exited
        line = line_bytes.decode("utf-8", errors="replace").strip()
        # Glitches at stream start are common and harmless
        if line and "header missing" not in line.lower() and "invalid data" not in line.lower():
            logger.warning("%s stderr: %s", name, line)


class AudioSink(abc.ABC):
    """An audio player handle. Each slot of a channel owns exactly one."""

    @abc.abstractmethod
    def load(self, url):
        """Sets the stream to play next, stopping what is playing."""

    @abc.abstractmethod
    async def play(self):
        """Starts the loaded stream; returns False if the player could not start."""

    @abc.abstractmethod
    def stop(self):
        pass

    @abc.abstractmethod
    def is_playing(self):
        """True once audio data is actually flowing to the output."""

    def has_finished(self):
        """True once a started stream has ended by itself, without stop()."""
        return False

    @abc.abstractmethod
    def set_volume(self, volume):
        pass

    @abc.abstractmethod
    def set_mute(self, muted):
        pass

    @abc.abstractmethod
    def set_audio_delay(self, seconds):
        pass

    @abc.abstractmethod
    def select_output_device(self, device_id):
        pass


class FfplaySink(AudioSink):
    """
    Plays a network stream through 'ffplay'.

    The stream is fetched with aiohttp and every chunk is held back for the
    configured audio delay before it is written to ffplay's stdin. Volume,
    mute and output device are ffplay start options, so changing them
    restarts ffplay while the fetch and its delay buffer carry on.
    """

    def __init__(self, name):
        self.name = name
        self.url = None
        self.volume = 100
        self.muted = False
        self.delay = 0
        self.device_id = ""

        self._proc = None             # Running ffplay process
        self._stderr_task = None
        self._relay_task = None       # Fetches the stream and feeds ffplay
        self._respawn_task = None
        self._buffer = deque()        # (arrival time, chunk) awaiting their delay
        self._data_received = False
        self._finished = False        # Relay ended without stop()

    # --- Player Process ---

    def _player_cmd(self):
        volume = 0 if self.muted else self.volume
        return FFPLAY_CMD + ["-volume", str(volume)] + FFPLAY_INPUT

    async def _spawn_player(self):
        env = dict(os.environ)
        if self.device_id:
            env["PULSE_SINK"] = self.device_id  # Route this ffplay to the selected sink
        self._proc = await asyncio.create_subprocess_exec(
            *self._player_cmd(),
            stdin=asyncio.subprocess.PIPE,     # Pipe audio data in
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,    # Capture stderr for errors
            env=env,
        )
        self._stderr_task = asyncio.create_task(
            _read_process_stderr(self._proc, f"ffplay {self.name}"),
            name=f"{self.name}_stderr",
        )
        logger.debug("%s: started ffplay (PID: %s)", self.name, self._proc.pid)

    def _kill_player(self):
        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()
        self._stderr_task = None
        self._proc = kill_process(self._proc, f"ffplay {self.name}")

    async def _respawn_player(self):
        self._kill_player()
        try:
            await self._spawn_player()
        except OSError as e:
            logger.error("%s: failed to restart ffplay: %s", self.name, e)

    def _schedule_respawn(self):
        # Options only apply on start; nothing to do while stopped
        if self._relay_task is None or self._relay_task.done():
            return
        if self._respawn_task and not self._respawn_task.done():
            self._respawn_task.cancel()
        self._respawn_task = asyncio.get_running_loop().create_task(
            self._respawn_player(), name=f"{self.name}_respawn")

    # --- Stream Relay ---

    async def _write_due_chunks(self):
        """Writes every buffered chunk whose delay has passed to ffplay."""
        due = time.monotonic() - self.delay
        while self._buffer and self._buffer[0][0] <= due:
            _, chunk = self._buffer.popleft()
            proc = self._proc
            if proc is None or proc.stdin is None or proc.stdin.is_closing():
                continue  # ffplay restarting, this chunk is dropped
            try:
                proc.stdin.write(chunk)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # ffplay likely exiting, the relay loop checks its exit code
                await asyncio.sleep(0.1)

    async def _relay_stream(self):
        timeout = aiohttp.ClientTimeout(total=None, sock_read=STREAM_READ_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            try:
                async with session.get(self.url) as resp:
                    if resp.status != 200:
                        logger.warning("%s: stream %s answered HTTP %s", self.name, self.url, resp.status)
                        return
                    async for chunk in resp.content.iter_chunked(STREAM_CHUNK_SIZE):
                        # A restart swaps in a new process, so an exit code here is final
                        rc = self._proc.returncode if self._proc else None
                        if rc is not None:
                            if is_unexpected_exit(rc):
                                logger.warning("%s: ffplay exited unexpectedly (code %s)", self.name, rc)
                            break
                        self._data_received = True
                        self._buffer.append((time.monotonic(), chunk))
                        await self._write_due_chunks()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("%s: stream %s interrupted: %s", self.name, self.url, e)
            finally:
                # A relay replaced by stop() and play() leaves the new one alone
                if self._relay_task is asyncio.current_task():
                    logger.info("%s: stream %s ended", self.name, self.url)
                    self._data_received = False
                    self._finished = True
                    if self._respawn_task and not self._respawn_task.done():
                        self._respawn_task.cancel()
                    self._kill_player()

    # --- AudioSink Interface ---

    def load(self, url):
        self.stop()
        self.url = url

    async def play(self):
        if not self.url or not check_command("ffplay"):
            return False
        self.stop()
        try:
            await self._spawn_player()
        except OSError as e:
            logger.error("%s: failed to start ffplay: %s", self.name, e)
            return False
        self._relay_task = asyncio.create_task(self._relay_stream(), name=f"{self.name}_relay")
        return True

    def stop(self):
        for task in (self._relay_task, self._respawn_task):
            if task and not task.done():
                task.cancel()
        self._relay_task = None
        self._respawn_task = None
        self._kill_player()
        self._buffer.clear()
        self._data_received = False
        self._finished = False

    def is_playing(self):
        return (self._proc is not None and self._proc.returncode is None
                and self._data_received)

    def has_finished(self):
        return self._finished

    def set_volume(self, volume):
        if volume != self.volume:
            self.volume = volume
            self._schedule_respawn()

    def set_mute(self, muted):
        if muted != self.muted:
            self.muted = muted
            self._schedule_respawn()

    def set_audio_delay(self, seconds):
        # Takes effect for the chunks still in the buffer, too
        self.delay = max(0, seconds)

    def select_output_device(self, device_id):
        if device_id != self.device_id:
            self.device_id = device_id
            self._schedule_respawn()


# =============================================================================
# Shared Output State
# =============================================================================

def list_pulse_sinks(client_name=PULSE_CLIENT_NAME):
    """Returns (name, description) of every PulseAudio/PipeWire output sink."""
    import pulsectl  # Loads libpulse, so only when actually needed

    with pulsectl.Pulse(client_name) as pulse:
        return [(s.name, s.description) for s in pulse.sink_list()]


class AudioOutputService:
    """
    Output state shared by every sink of every channel.

    Created with the channel manager and closed with it. Volume and mute
    are read by the channels on each tick; the output device is pushed to
    all registered sinks right away.
    """

    def __init__(self, volume=100, muted=False, device_id="", device_lister=list_pulse_sinks):
        self.volume = volume
        self.muted = muted
        self.device_id = device_id
        self.devices = []                # (id, description) of known devices
        self._device_lister = device_lister
        self._sinks = []

    def register(self, sink):
        self._sinks.append(sink)
        if self.device_id:
            sink.select_output_device(self.device_id)
        return sink

    @property
    def sinks(self):
        return list(self._sinks)

    def set_volume(self, volume):
        self.volume = max(0, min(100, int(volume)))

    def set_mute(self, muted):
        self.muted = bool(muted)

    def set_all_audio_device(self, device_id):
        self.device_id = device_id
        for sink in self._sinks:
            sink.select_output_device(device_id)

    def update_output_devices(self):
        """Refreshes the list of output devices; keeps the old list if none can be read."""
        try:
            devices = self._device_lister()
        except Exception as e:
            # No sound server reachable is a normal situation on headless hosts
            logger.warning("Could not list audio output devices: %s", e)
            return self.devices
        if devices != self.devices:
            logger.debug("Audio output devices: %s", ", ".join(d for d, _ in devices) or "none")
        self.devices = devices
        return self.devices

    def close(self):
        for sink in self._sinks:
            sink.stop()
        self._sinks.clear()
