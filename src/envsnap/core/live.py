"""Read-only view of the live machine used by the planner and executor."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .collectors import Collector
from .models import Item

logger = logging.getLogger(__name__)


class LiveStateView:
    """Answers "what does the machine hold for this item right now?".

    Creating a view drops every cached enumeration, so a plan is always
    computed against fresh state. The executor asks again with
    ``fresh=True`` right before each mutation.
    """

    def __init__(self, collectors: Dict[str, Collector]) -> None:
        self.collectors = collectors
        for collector in collectors.values():
            collector.invalidate()

    def probe(self, domain: str, item: Item, fresh: bool = False) -> Optional[str]:
        """Return the live digest for ``item``, or None if it is absent."""
        collector = self.collectors.get(domain)
        if collector is None:
            logger.debug("No collector for domain %s; treating %s as absent", domain, item.identity)
            return None
        if fresh:
            collector.invalidate()
        return collector.probe(item)

    def invalidate(self, domain: str) -> None:
        collector = self.collectors.get(domain)
        if collector is not None:
            collector.invalidate()
