#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# =============================================================================
# LiveATC COM Channel Client
# =============================================================================
#
# Description:
#   Plays the LiveATC.net (https://www.liveatc.net) stream matching the
#   frequency tuned on a COM radio. The closest airport listening on the
#   frequency within reception range is chosen; when the listener moves,
#   streams that go out of reach are stopped and closer ones taken over.
#   Audio is played locally through 'ffplay'.
#
# License:
#   This project is licensed under the GNU-GPL v3 License.
#
# =============================================================================
#
# Capabilities:
#   - Two COM radios, each with an active and a standby frequency.
#   - Desync: streams can be delayed to match a delayed feed. While a new
#     stream waits out its delay, the previous one keeps playing.
#   - Standby pre-buffering: with a desync configured, the standby
#     frequency's stream is started muted in advance, so swapping to it is
#     instant.
#   - Range: airports beyond --max-dist nm are never tuned to.
#
# Usage:
#   python -m liveatc_client --lat 37.62 --lon -122.38 --airports airports.csv
#
#   The airport list is a CSV file in the OurAirports layout
#   (https://ourairports.com/data/airports.csv); the columns 'ident',
#   'latitude_deg' and 'longitude_deg' are used.
#
# Keyboard Controls:
#   - Digits/'.'  : Enter a frequency in MHz (e.g. 118.300).
#   - Enter       : Tune the selected COM's active frequency to the entry.
#   - s           : Set the selected COM's standby frequency to the entry.
#   - x           : Swap active and standby frequency (flip-flop).
#   - Tab         : Select COM1/COM2.
#   - a           : Toggle the selected COM's audio select.
#   - +/-         : Volume up/down.
#   - m           : Mute/unmute all.
#   - Backspace   : Delete last character of the entry.
#   - Esc         : Clear the entry.
#   - Ctrl+C      : Exit.
#
# =============================================================================

# --- Core Imports ---
import argparse
import asyncio
import logging
import queue
import shutil
import signal
import sys
import threading
import traceback

import readchar

from . import __version__
from .channel import ChannelManager, run_tick_loop
from .directory import LIVEATC_BASE_URL, StreamDirectory
from .geo import AirportGazetteer, Position, frequency_text, mhz_to_khz, MIN_FREQ_MHZ, MAX_FREQ_MHZ
from .settings import COM_COUNT, DEFAULT_MAX_RADIO_DIST_NM, DEFAULT_VOLUME, Settings
from .sim import ManualDataSource
from .sink import check_command

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
VOLUME_STEP = 10                  # Volume change per +/- key press
SHUTDOWN_JOIN_TIMEOUT = 7.0       # Seconds to wait for the controller thread

# --- CLI Constants ---
CLEAR_LINE = "\033[K"             # ANSI: Clear line from cursor to end
SAVE_CURSOR = "\033[s"            # ANSI: Save cursor position
RESTORE_CURSOR = "\033[u"         # ANSI: Restore cursor position
SHOW_CURSOR = "\033[?25h"         # ANSI: Show cursor
HIDE_CURSOR = "\033[?25l"         # ANSI: Hide cursor
KEY_BACKSPACE = ["\x08", "\x7f"]  # Backspace and Delete often map differently
KEY_ENTER = ["\r", "\n"]
KEY_TAB = "\t"
KEY_ESC = "\x1b"
KEY_CTRL_C = "\x03"
MAX_INPUT_LENGTH = 7              # "118.300"

# --- Global State ---
# Used for cross-thread communication and shutdown coordination
app_running = threading.Event()   # Thread-safe flag to signal application shutdown
app_running.set()
cli_command_queue = None          # CLI -> controller
cli_update_queue = None           # Controller -> CLI
cli_asyncio_controller = None
# CLI Display State Variables
cli_display_lines_printed = 0     # Number of lines used by the last channel display
cli_last_channels = []            # Last channel snapshot received
cli_selected_com = 0              # COM the keyboard acts on
cli_input_buffer = ""             # Frequency being typed
cli_input_line_row = 10           # Row of the status line, follows the display
cli_status_message = ""


# =============================================================================
# AsyncioController Class
# =============================================================================
# Runs the channel manager on an asyncio event loop in a background
# thread: a 1 Hz ticker and a listener for commands from the CLI.
# Updates for the CLI are put on the update queue.
# =============================================================================

class AsyncioController:
    def __init__(self, settings, sim, command_queue, update_queue, directory_url=LIVEATC_BASE_URL):
        """
        Initializes the controller.

        Args:
            settings (Settings): Channel settings.
            sim (ManualDataSource): Host state the commands act on.
            command_queue (queue.Queue): Commands from the CLI, as tuples.
            update_queue (queue.Queue): Updates to the CLI (channels, status, errors).
            directory_url (str): Base URL of the stream directory.
        """
        self.settings = settings
        self.sim = sim
        self.command_queue = command_queue
        self.update_queue = update_queue
        self.manager = ChannelManager(settings, sim, directory=StreamDirectory(directory_url),
                                      notify=self.put_update)

        self.loop = None
        self.thread = None
        self.app_running_event = app_running

    def start(self):
        """Starts the asyncio event loop in a new background thread."""
        if self.thread is None or not self.thread.is_alive():
            self.app_running_event.set()
            self.thread = threading.Thread(target=self._run_asyncio_loop, daemon=True,
                                           name="AsyncioController")
            self.thread.start()

    def stop(self):
        """Signals the controller to shut down and waits for its thread."""
        if self.app_running_event.is_set():
            self.app_running_event.clear()
            # Wake up the command listener if it's blocking
            try:
                self.command_queue.put_nowait(None)
            except queue.Full:
                pass
        if self.thread and self.thread.is_alive() and threading.current_thread() is not self.thread:
            self.thread.join(timeout=SHUTDOWN_JOIN_TIMEOUT)
            if self.thread.is_alive():
                logger.warning("Controller thread did not exit cleanly after stop request.")
        self.thread = None

    def is_running(self):
        return self.app_running_event.is_set() and self.thread is not None and self.thread.is_alive()

    def _run_asyncio_loop(self):
        """The target method for the controller's thread."""
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)
            self.loop.run_until_complete(self._main_async())
        except Exception as e:
            self.put_update("error", f"Asyncio loop crashed: {e}")
            logger.exception("Asyncio loop crashed")
            self.app_running_event.clear()
        finally:
            if self.loop:
                try:
                    # Cancel whatever is left (stream relays, stderr readers)
                    pending_tasks = [t for t in asyncio.all_tasks(self.loop) if not t.done()]
                    for task in pending_tasks:
                        task.cancel()
                    cleanup = pending_tasks + [self.loop.shutdown_asyncgens()]
                    self.loop.run_until_complete(asyncio.gather(*cleanup, return_exceptions=True))
                finally:
                    self.loop.close()
                    self.loop = None
            self.put_update("closed", None)

    async def _main_async(self):
        """Creates the core tasks, restarts them on failure and shuts the channels down."""
        task_factories = {
            "Commands": self._handle_commands,
            "Ticker": self._run_ticker,
        }
        tasks = {asyncio.create_task(factory(), name=name) for name, factory in task_factories.items()}

        while self.app_running_event.is_set():
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED, timeout=0.5)
            for task in done:
                tasks.remove(task)
                task_name = task.get_name()
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is None:
                    continue  # Regular exit on shutdown
                self.put_update("error", f"Task {task_name} failed: {type(exc).__name__}: {exc}")
                logger.error("Error in task %s", task_name, exc_info=exc)
                if self.app_running_event.is_set():
                    logger.info("Restarting task %s after error...", task_name)
                    tasks.add(asyncio.create_task(task_factories[task_name](), name=task_name))

        # --- Shutdown Cleanup ---
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.manager.shutdown()

    def put_update(self, message_type, data):
        """Safely puts an update message onto the queue for the UI."""
        try:
            self.update_queue.put_nowait((message_type, data))
        except queue.Full:
            logger.warning("Update queue full. Dropping update: %s", message_type)

    async def _tick(self):
        await self.manager.tick()
        self.put_update("channels", self.manager.snapshot())

    async def _run_ticker(self):
        await run_tick_loop(self._tick, self.app_running_event.is_set)

    async def _handle_commands(self):
        """Listens for commands from the CLI queue and applies them."""
        while self.app_running_event.is_set():
            try:
                # Blocking get in a worker thread; the timeout lets shutdown be noticed
                command = await asyncio.to_thread(self.command_queue.get, block=True, timeout=0.5)
            except queue.Empty:
                continue
            if command is None:
                continue  # Shutdown wake-up
            try:
                self.apply_command(command)
            finally:
                self.command_queue.task_done()

    def apply_command(self, command):
        """Applies one CLI command tuple to the host state or the channel manager."""
        name, *params = command
        if name == "tune":
            idx, khz = params
            self.sim.set_tuned(idx, khz)
        elif name == "standby":
            idx, khz = params
            self.sim.set_standby(idx, khz)
        elif name == "swap":
            self.sim.swap(params[0])
        elif name == "audio_select":
            self.sim.toggle_audio_select(params[0])
        elif name == "volume":
            self.manager.set_all_volume(self.manager.service.volume + params[0])
            self.put_update("status", f"Volume {self.manager.service.volume}")
        elif name == "mute":
            self.manager.mute_all(not self.manager.service.muted)
            self.put_update("status", "Muted" if self.manager.service.muted else "Unmuted")
        else:
            logger.warning("Ignoring unknown command %r", command)
            return
        self.put_update("channels", self.manager.snapshot())


# =============================================================================
# CLI Mode Functions
# =============================================================================

def format_and_display_data(channels):
    """Prints the channel table at the top of the screen."""
    global cli_display_lines_printed, cli_last_channels, cli_input_line_row

    if channels:
        cli_last_channels = channels
    elif not cli_last_channels:
        return

    lines = ["=" * 70]
    for ch in cli_last_channels:
        marker = ">" if ch["com"] - 1 == cli_selected_com else " "
        desync = f" ({ch['desync']}s)" if ch["desync"] else ""
        lines.append(f"{marker}COM{ch['com']}: {ch['frequency'] or '---.---':>7}  "
                     f"stby {ch['standby'] or '---.---':>7}  [{ch['status']}{desync}]")
        lines.append(f"        {ch['stream']}")
        if ch["prev"]:
            lines.append(f"        {ch['prev']}")
    lines.append("=" * 70)

    term_width = shutil.get_terminal_size((80, 24)).columns
    print(SAVE_CURSOR, end="")
    print("\033[1;1H", end="")
    for line in lines:
        print(f"{CLEAR_LINE}{line[:term_width]}")

    # Clear any leftover lines from a previous, longer display
    for i in range(len(lines), cli_display_lines_printed):
        print(f"\033[{i + 1};1H{CLEAR_LINE}", end="")

    cli_display_lines_printed = len(lines)
    cli_input_line_row = cli_display_lines_printed + 1
    update_cli_input_and_status()
    print(RESTORE_CURSOR, end="", flush=True)


def update_cli_input_and_status(temp_message=None):
    """Updates the status and input prompt lines below the channel table."""
    status_row = cli_input_line_row
    input_row = status_row + 1
    temp_msg_row = input_row + 1
    term_width = shutil.get_terminal_size((80, 24)).columns

    print(f"\033[{status_row};1H{CLEAR_LINE}", end="")
    print(cli_status_message[:term_width - 1], end="")

    print(f"\033[{input_row};1H{CLEAR_LINE}", end="")
    prompt = f"COM{cli_selected_com + 1} [MHz] (Enter tune, s stby, x swap, Tab COM, +/- vol, m mute): "
    print(f"{prompt}{cli_input_buffer}_"[:term_width - 1], end="")

    print(f"\033[{temp_msg_row};1H{CLEAR_LINE}", end="")
    if temp_message:
        print(temp_message[:term_width - 1], end="")

    cursor_col = len(prompt) + len(cli_input_buffer) + 1
    print(f"\033[{input_row};{cursor_col}H", end="", flush=True)


def _take_input_frequency():
    """Parses and clears the input buffer; returns (kHz or None, message)."""
    global cli_input_buffer
    entry, cli_input_buffer = cli_input_buffer, ""
    khz = mhz_to_khz(entry)
    if khz is None:
        return None, f"Invalid Freq ({MIN_FREQ_MHZ:.3f}-{MAX_FREQ_MHZ:.3f} MHz)."
    return khz, None


def _blocking_keyboard_listener():
    """Runs in a separate thread, turning key presses into controller commands."""
    global cli_input_buffer, cli_selected_com

    last_temp_message = ""
    while app_running.is_set():
        try:
            char = readchar.readkey()

            # Clear any temporary message from the previous keypress
            if last_temp_message:
                update_cli_input_and_status(temp_message="")
                last_temp_message = ""

            if char == KEY_CTRL_C:
                print(f"\n{CLEAR_LINE}Ctrl+C detected, initiating shutdown...")
                app_running.clear()
                cli_command_queue.put(None)
                break

            elif char == KEY_ESC:
                cli_input_buffer = ""
                update_cli_input_and_status()

            elif char in KEY_BACKSPACE:
                cli_input_buffer = cli_input_buffer[:-1]
                update_cli_input_and_status()

            elif char in KEY_ENTER or char in ("s", "S"):
                if not cli_input_buffer:
                    format_and_display_data(None)
                    continue
                khz, last_temp_message = _take_input_frequency()
                if khz is not None:
                    command = "tune" if char in KEY_ENTER else "standby"
                    cli_command_queue.put((command, cli_selected_com, khz))
                    last_temp_message = f"COM{cli_selected_com + 1} {command} {frequency_text(khz)}"
                update_cli_input_and_status(temp_message=last_temp_message)

            elif char in ("x", "X"):
                cli_command_queue.put(("swap", cli_selected_com))

            elif char == KEY_TAB:
                cli_selected_com = (cli_selected_com + 1) % COM_COUNT
                format_and_display_data(None)

            elif char in ("a", "A"):
                cli_command_queue.put(("audio_select", cli_selected_com))

            elif char in ("+", "-"):
                cli_command_queue.put(("volume", VOLUME_STEP if char == "+" else -VOLUME_STEP))

            elif char in ("m", "M"):
                cli_command_queue.put(("mute",))

            elif char.isdigit() or char in (".", ","):
                if len(cli_input_buffer) < MAX_INPUT_LENGTH:
                    cli_input_buffer += char.replace(",", ".")
                    update_cli_input_and_status()

        except KeyboardInterrupt:
            app_running.clear()
            cli_command_queue.put(None)
            break
        except Exception as e:
            if app_running.is_set():
                print(f"\n{CLEAR_LINE}CLI Keyboard listener error: {e}", flush=True)
                traceback.print_exc()
                app_running.clear()
                cli_command_queue.put(None)
            break


def cli_update_loop():
    """Processes controller updates in the main thread until shutdown."""
    global cli_status_message

    while app_running.is_set():
        try:
            message_type, data = cli_update_queue.get(block=True, timeout=0.2)
        except queue.Empty:
            continue

        if message_type == "channels":
            format_and_display_data(data)
        elif message_type == "status":
            cli_status_message = f"Status: {data}"
            update_cli_input_and_status()
        elif message_type == "error":
            cli_status_message = f"ERROR: {data}"
            update_cli_input_and_status()
        elif message_type == "closed":
            cli_status_message = "Status: Controller stopped."
            update_cli_input_and_status()
            app_running.clear()
            break
        cli_update_queue.task_done()


# =============================================================================
# CLI Mode Runner
# =============================================================================

def run_cli(settings, sim, args):
    """Sets up and runs the terminal interface until Ctrl+C or a signal."""
    global cli_command_queue, cli_update_queue, cli_asyncio_controller, cli_status_message

    cli_command_queue = queue.Queue()
    cli_update_queue = queue.Queue()

    def signal_handler(sig, frame):
        """Handles SIGINT/SIGTERM to initiate graceful shutdown."""
        if app_running.is_set():
            print(f"\n{CLEAR_LINE}SIGNAL {signal.Signals(sig).name} received. Initiating shutdown...", flush=True)
            app_running.clear()
            try:
                cli_command_queue.put_nowait(None)
            except queue.Full:
                pass

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Hide cursor, clear screen, move cursor to top-left
    print(f"{HIDE_CURSOR}\033[2J\033[H", end="", flush=True)

    cli_status_message = "Status: Initializing..."
    update_cli_input_and_status()
    cli_asyncio_controller = AsyncioController(settings, sim, cli_command_queue, cli_update_queue,
                                               directory_url=args.directory_url)
    cli_asyncio_controller.start()

    keyboard_thread = threading.Thread(target=_blocking_keyboard_listener, daemon=True,
                                       name="CLIKeyboardThread")
    keyboard_thread.start()

    try:
        cli_update_loop()
    finally:
        print(f"\n{CLEAR_LINE}Shutting down...", flush=True)
        app_running.clear()
        cli_asyncio_controller.stop()

        print(SHOW_CURSOR, end="", flush=True)
        print(f"\033[{cli_input_line_row + 3};1H", end="")
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
        print(f"{CLEAR_LINE}Exit.", flush=True)


# =============================================================================
# Main Execution Block
# =============================================================================

def _parse_frequency_arg(value):
    khz = mhz_to_khz(value)
    if khz is None:
        raise argparse.ArgumentTypeError(
            f"'{value}' is not a COM frequency ({MIN_FREQ_MHZ:.3f}-{MAX_FREQ_MHZ:.3f} MHz)")
    return khz


def build_parser():
    parser = argparse.ArgumentParser(
        description="Plays the LiveATC.net stream matching the tuned COM frequency, via ffplay.",
        epilog=f"Version {__version__}.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--lat", type=float, required=True, help="Listener latitude in degrees.")
    parser.add_argument("--lon", type=float, required=True, help="Listener longitude in degrees.")
    parser.add_argument("--airports", metavar="CSV", required=True,
                        help="Airport list (OurAirports CSV layout) to locate stream origins.")
    parser.add_argument("--com1", type=_parse_frequency_arg, metavar="MHZ", help="Initial COM1 frequency.")
    parser.add_argument("--com2", type=_parse_frequency_arg, metavar="MHZ", help="Initial COM2 frequency.")
    parser.add_argument("--no-com2", action="store_true", help="Ignore COM2.")
    parser.add_argument("--max-dist", type=float, default=DEFAULT_MAX_RADIO_DIST_NM, metavar="NM",
                        help="Maximum distance to a stream's airport.")
    parser.add_argument("--desync", type=int, default=0, metavar="SECONDS",
                        help="Delay applied to every stream.")
    parser.add_argument("--buffer-period", type=int, default=0, metavar="SECONDS",
                        help="Buffering of the feed the audio is synced to; added to --desync.")
    parser.add_argument("--no-prev-runs", action="store_true",
                        help="Stop the previous stream immediately instead of after the desync wait.")
    parser.add_argument("--no-prebuffer", action="store_true", help="Don't pre-buffer the standby frequency.")
    parser.add_argument("--respect-audio-select", action="store_true",
                        help="Mute a COM while its audio select is off.")
    parser.add_argument("--volume", type=int, default=DEFAULT_VOLUME, help="Volume 0-100.")
    parser.add_argument("--device", default="", help="PulseAudio sink to play on.")
    parser.add_argument("--directory-url", default=LIVEATC_BASE_URL, help=argparse.SUPPRESS)
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level.")
    parser.add_argument("--log-file", help="Write the log to this file instead of stderr.")
    return parser


def settings_from_args(args):
    return Settings(
        act_on_com=[True, not args.no_com2],
        respect_audio_select=args.respect_audio_select,
        volume=max(0, min(100, args.volume)),
        desync_manual=args.desync,
        prev_frequ_runs_til_desync=not args.no_prev_runs,
        prebuffer_standby=not args.no_prebuffer,
        max_radio_dist_nm=args.max_dist,
        audio_device=args.device,
    )


def main():
    args = build_parser().parse_args()

    logging.basicConfig(
        level=args.log_level,
        filename=args.log_file,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not check_command("ffplay"):
        print("Fatal Error: 'ffplay' (part of FFmpeg) is required for audio output.")
        sys.exit(1)

    try:
        gazetteer = AirportGazetteer.from_csv(args.airports)
    except OSError as e:
        print(f"Fatal Error: cannot read airport list: {e}")
        sys.exit(1)

    sim = ManualDataSource(Position(args.lat, args.lon), gazetteer, buffer_period=args.buffer_period)
    for idx, khz in enumerate((args.com1, args.com2)):
        if khz:
            sim.set_tuned(idx, khz)

    run_cli(settings_from_args(args), sim, args)


if __name__ == "__main__":
    main()
