"""Ask-human rendezvous engine.

Lets an automated agent block on a question until a person answers it by
editing a shared markdown file.
"""

from askhuman.config import RendezvousConfig, get_config, load_env, read_env_file
from askhuman.errors import (
    ArtifactIOError,
    ArtifactTooLargeError,
    AskHumanError,
    InputValidationError,
    LockContentionError,
    QuestionTimeoutError,
    ShutdownError,
    TooManyPendingError,
    WatchInitError,
)
from askhuman.notifier import ChangeNotifier, Subscription
from askhuman.registry import PendingRegistry
from askhuman.rendezvous import PendingQuestion, RendezvousCoordinator, RendezvousStats

__all__ = [
    "ArtifactIOError",
    "ArtifactTooLargeError",
    "AskHumanError",
    "ChangeNotifier",
    "InputValidationError",
    "LockContentionError",
    "PendingQuestion",
    "PendingRegistry",
    "QuestionTimeoutError",
    "RendezvousConfig",
    "RendezvousCoordinator",
    "RendezvousStats",
    "ShutdownError",
    "Subscription",
    "TooManyPendingError",
    "WatchInitError",
    "get_config",
    "load_env",
    "read_env_file",
]
