"""Pomodoro Jam - shared pomodoro timer sessions over a message relay."""

from .client import JamClient, JamConnectionError, JamError
from .config import JamConfig, load_config
from .manager import JamManager
from .protocol import ConnectionState, ControlAction, JamParticipant, JamSession

__version__ = "0.1.0"

__all__ = [
    "ConnectionState",
    "ControlAction",
    "JamClient",
    "JamConfig",
    "JamConnectionError",
    "JamError",
    "JamManager",
    "JamParticipant",
    "JamSession",
    "__version__",
    "load_config",
]
