# =============================================================================
# LiveATC COM Channel Client
# =============================================================================
#
# Plays the LiveATC.net stream that matches the frequency tuned on a COM
# radio, swapping streams as the frequency or the listener's position
# changes. This project is licensed under the GNU-GPL v3 License.
#
# =============================================================================

__version__ = "1.0"

from .errors import LiveATCError, NetworkFailure, NoCandidateInRange, ParseAnomaly, PlaybackStartFailure
from .geo import Position, AirportGazetteer, frequency_text, mhz_to_khz
from .directory import StreamCandidate, CandidateSet, StreamDirectory, select_closest
from .settings import Settings
from .channel import StreamStatus, StreamSlot, ComChannel, ChannelManager, TickSchedule
