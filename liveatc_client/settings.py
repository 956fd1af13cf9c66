"""Runtime settings of the channel machinery."""

from dataclasses import dataclass, field

# --- Defaults ---
COM_COUNT = 2                       # Number of COM radios monitored
DEFAULT_MAX_RADIO_DIST_NM = 300     # Reception cutoff
DEFAULT_VOLUME = 100
MAINTENANCE_EVERY_TICKS = 10        # Throttle for range checks and pre-buffering
DEVICE_REFRESH_EVERY_TICKS = 60     # Throttle for re-reading output devices


@dataclass
class Settings:
    act_on_com: list = field(default_factory=lambda: [True] * COM_COUNT)
    respect_audio_select: bool = False
    volume: int = DEFAULT_VOLUME
    mute: bool = False
    desync_with_external_delay: bool = True
    desync_manual: int = 0
    prev_frequ_runs_til_desync: bool = True
    prebuffer_standby: bool = True
    prefer_liveatc_atis: bool = True
    max_radio_dist_nm: float = DEFAULT_MAX_RADIO_DIST_NM
    audio_device: str = ""
    maintenance_every: int = MAINTENANCE_EVERY_TICKS
    device_refresh_every: int = DEVICE_REFRESH_EVERY_TICKS

    def desync_period(self, external_period=0):
        """Seconds a new stream is held back: manual desync plus the host's buffering, never negative."""
        period = self.desync_manual
        if self.desync_with_external_delay:
            period += external_period
        return max(0, int(period))
