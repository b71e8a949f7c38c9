"""Control-plane public API."""

from merge_train.control_plane.engineer import Engineer
from merge_train.control_plane.outcomes import ConflictInputs, OutcomeAction, OutcomeHandlers

__all__ = [
    "ConflictInputs",
    "Engineer",
    "OutcomeAction",
    "OutcomeHandlers",
]
