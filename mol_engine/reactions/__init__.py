from .reaction_types import PointwiseReaction, InplaceReactionFn, FunctionalReactionFn, describe_reaction
from .library import (
    gierer_meinhardt,
    gierer_meinhardt_steady_state,
    schnakenberg,
    linear_decay,
)

__all__ = [
    "PointwiseReaction",
    "InplaceReactionFn",
    "FunctionalReactionFn",
    "describe_reaction",
    "gierer_meinhardt",
    "gierer_meinhardt_steady_state",
    "schnakenberg",
    "linear_decay",
]
