"""Restore planning.

Compares every item of a snapshot with the live machine and decides what to do
with it:

- absent on the machine: ``install`` (packages, applications) or ``write``
- present with the same digest: ``skip-identical``
- present but different: ``conflict`` carrying the domain's policy, or
  ``merge`` when the domain is configured to merge

Actions come out ordered by domain (``domain_order``) and then by item
identity, so the same inputs always give the same plan.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .live import LiveStateView
from .models import (
    INSTALLABLE_KINDS,
    ActionKind,
    ConflictPolicy,
    Item,
    RestoreAction,
    Snapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN_ORDER = ["ssh-keys", "packages", "applications", "dotfiles", "preferences"]


class RestorePlanner:
    """Computes the ordered actions that converge the machine to a snapshot."""

    def __init__(
        self,
        policies: Optional[Dict[str, ConflictPolicy]] = None,
        domain_order: Optional[Iterable[str]] = None,
    ) -> None:
        self.policies = dict(policies or {})
        self.domain_order = list(domain_order or DEFAULT_DOMAIN_ORDER)

    def policy_for(self, domain: str) -> ConflictPolicy:
        return self.policies.get(domain, ConflictPolicy.SKIP)

    def sort_key(self, domain: str, identity: str) -> Tuple[int, str, str]:
        if domain in self.domain_order:
            return (self.domain_order.index(domain), "", identity)
        return (len(self.domain_order), domain, identity)

    def classify(self, domain: str, item: Item, live_digest: Optional[str]) -> Tuple[ActionKind, str]:
        """Decide the action kind and its justification for one item."""
        if live_digest is None:
            if item.kind in INSTALLABLE_KINDS:
                return ActionKind.INSTALL, "not installed on this machine"
            return ActionKind.WRITE, "absent on this machine"
        if live_digest == item.digest:
            return ActionKind.SKIP_IDENTICAL, "identical to snapshot"

        policy = self.policy_for(domain)
        if policy == ConflictPolicy.MERGE:
            return ActionKind.MERGE, "differs from snapshot; merging snapshot values"
        return ActionKind.CONFLICT, f"differs from snapshot; policy {policy.value}"

    def plan(self, snapshot: Snapshot, live: LiveStateView) -> List[RestoreAction]:
        """Plan the restore of ``snapshot`` onto the machine seen by ``live``."""
        owners: Dict[str, str] = {}
        for domain, item in snapshot.iter_items():
            owners.setdefault(item.identity, f"{domain}/{item.identity}")

        actions: List[RestoreAction] = []
        for domain, item in snapshot.iter_items():
            kind, justification = self.classify(domain, item, live.probe(domain, item))

            depends_on = []
            for requirement in item.metadata.get("requires", []):
                owner = owners.get(requirement)
                if owner is None:
                    logger.debug("%s requires %s, which is not in the snapshot", item.identity, requirement)
                    continue
                depends_on.append(owner)

            actions.append(
                RestoreAction(
                    domain=domain,
                    item=item,
                    kind=kind,
                    justification=justification,
                    policy=self.policy_for(domain),
                    blocking=kind == ActionKind.INSTALL,
                    depends_on=tuple(sorted(depends_on)),
                )
            )

        actions.sort(key=lambda action: self.sort_key(action.domain, action.item.identity))
        logger.info(
            "Planned %d actions (%d to install or write, %d conflicts)",
            len(actions),
            sum(1 for a in actions if a.kind in (ActionKind.INSTALL, ActionKind.WRITE)),
            sum(1 for a in actions if a.kind in (ActionKind.CONFLICT, ActionKind.MERGE)),
        )
        return actions
