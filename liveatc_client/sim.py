# =============================================================================
# Host Data Sources
# =============================================================================
# The channels poll the host once per tick for tuned frequencies, the
# listener's position and airport positions. SimDataSource is what they
# expect; ManualDataSource is the stand-alone host driven from the CLI.
# =============================================================================

import abc
import logging

logger = logging.getLogger(__name__)


class SimDataSource(abc.ABC):
    """What the channels read from the host, once per tick."""

    @abc.abstractmethod
    def get_tuned_frequency(self, idx):
        """Active frequency of COM radio `idx` in kHz, 0 if off."""

    @abc.abstractmethod
    def get_standby_frequency(self, idx):
        """Standby frequency of COM radio `idx` in kHz, 0 if unknown."""

    @abc.abstractmethod
    def is_com_selected(self, idx):
        """Whether the audio panel has COM radio `idx` selected."""

    @abc.abstractmethod
    def get_listener_position(self):
        """Listener's Position, or None if not known."""

    @abc.abstractmethod
    def lookup_position(self, origin):
        """Position of the airport `origin`, or None if unknown."""

    def external_buffer_period(self):
        """Seconds the host itself buffers its feed; added to the desync period."""
        return 0

    def enable_sim_atis(self, enabled):
        """Switches the host's own ATIS playback on or off."""


class ManualDataSource(SimDataSource):
    """
    Host state set by hand: frequencies typed into the CLI, a fixed
    listener position and an airport list loaded from CSV.

    Only the controller's event loop thread mutates it.
    """

    def __init__(self, position=None, gazetteer=None, buffer_period=0, com_count=2):
        self.position = position
        self.gazetteer = gazetteer
        self.buffer_period = buffer_period
        self.tuned = [0] * com_count
        self.standby = [0] * com_count
        self.audio_selected = [idx == 0 for idx in range(com_count)]
        self.sim_atis_enabled = True

    def set_tuned(self, idx, khz):
        self.tuned[idx] = khz

    def set_standby(self, idx, khz):
        self.standby[idx] = khz

    def swap(self, idx):
        """Flip-flop: exchanges active and standby frequency."""
        self.tuned[idx], self.standby[idx] = self.standby[idx], self.tuned[idx]

    def toggle_audio_select(self, idx):
        self.audio_selected[idx] = not self.audio_selected[idx]

    def get_tuned_frequency(self, idx):
        return self.tuned[idx]

    def get_standby_frequency(self, idx):
        return self.standby[idx]

    def is_com_selected(self, idx):
        return self.audio_selected[idx]

    def get_listener_position(self):
        return self.position

    def lookup_position(self, origin):
        if self.gazetteer is None:
            return None
        return self.gazetteer.lookup(origin)

    def external_buffer_period(self):
        return self.buffer_period

    def enable_sim_atis(self, enabled):
        if enabled != self.sim_atis_enabled:
            logger.debug("Host ATIS %s", "enabled" if enabled else "disabled")
        self.sim_atis_enabled = enabled
