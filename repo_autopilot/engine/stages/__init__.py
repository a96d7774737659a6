"""The five stages of a daemon cycle, in execution order.

Stages:
    - DiscoveryStage: Open backlog issues for new marker comments
    - PromotionStage: Backlog -> Ready, oldest first, up to ``max_ready``
    - StartStage: Ready -> In progress, creating a remote session per item
    - PollStage: In progress -> In review (PR opened) or back to Backlog
    - ReviewStage: In review -> Done (merged), Ready (rework), or stays put
"""

from repo_autopilot.engine.stages.base import CycleStage
from repo_autopilot.engine.stages.discovery import DiscoveryStage
from repo_autopilot.engine.stages.poll import PollStage
from repo_autopilot.engine.stages.promotion import PromotionStage
from repo_autopilot.engine.stages.review import ReviewStage
from repo_autopilot.engine.stages.start import StartStage

__all__ = [
    "CycleStage",
    "DiscoveryStage",
    "PollStage",
    "PromotionStage",
    "ReviewStage",
    "StartStage",
]
