"""
Domain service: local supervisor assignment heuristic.
"""
from collections import Counter
from typing import Optional, Sequence
import logging

from app.domain.models import Supervisor

logger = logging.getLogger(__name__)


class LeastLoadedSupervisorAssigner:
    """
    Assigns the active supervisor with the lightest load.

    Load is the supervisor's current farmer count plus the groups already
    handed out by this assigner, so groups of one run are spread across
    supervisors instead of piling onto one.
    """

    def __init__(self):
        self._assigned: Counter[str] = Counter()

    async def assign(
        self, group_id: str, cluster_id: str, candidates: Sequence[Supervisor]
    ) -> Optional[str]:
        available = [s for s in candidates if s.is_active and s.has_capacity]
        if not available:
            logger.warning(f"No supervisor available for group {group_id} in cluster {cluster_id}")
            return None

        chosen = min(
            available,
            key=lambda s: (s.current_farmer_count + self._assigned[s.id], s.id),
        )
        self._assigned[chosen.id] += 1
        logger.debug(f"Assigned supervisor {chosen.id} to group {group_id}")
        return chosen.id
