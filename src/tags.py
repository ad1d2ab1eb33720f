"""
Tag capture and reconciliation for overwritten destination resources.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from naming import is_root_namespace

logger = logging.getLogger(__name__)

ROOT_REQUIRED_TAGS: Tuple[str, ...] = ("Environment", "Owner", "Service", "Type")
NAMESPACE_REQUIRED_TAGS: Tuple[str, ...] = ROOT_REQUIRED_TAGS + ("ClientName",)


def required_tags(namespace: str) -> Tuple[str, ...]:
    """Tags every destination resource in the namespace must carry."""
    if is_root_namespace(namespace):
        return ROOT_REQUIRED_TAGS
    return NAMESPACE_REQUIRED_TAGS


def missing_tags(tags: Dict[str, str], namespace: str) -> List[str]:
    """Required keys absent (or empty) in a tag map."""
    return [key for key in required_tags(namespace) if not tags.get(key)]


@dataclass
class TagOutcome:
    """Result of reconciling one resource."""

    applied: Dict[str, str] = field(default_factory=dict)
    dropped: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    reapplied: bool = False

    @property
    def complete(self) -> bool:
        return not self.missing


class TagReconciler:
    """Snapshots tags before overwrite and restores the required set after."""

    def __init__(self, api, extra_allowed: Optional[List[str]] = None):
        """
        Args:
            api: AzureRestClient (needs get_tags / merge_tags)
            extra_allowed: Additional tag keys allowed to be carried over
        """
        self.api = api
        self.extra_allowed = list(extra_allowed or [])

    def allowlist(self, namespace: str) -> List[str]:
        return list(required_tags(namespace)) + self.extra_allowed

    def capture(self, resource_id: str) -> Dict[str, str]:
        """Read the current tags of a resource; absent resources have none."""
        tags = self.api.get_tags(resource_id)
        logger.debug(f"Captured {len(tags)} tag(s) from {resource_id}")
        return tags

    def select(
        self,
        saved: Dict[str, str],
        namespace: str,
        fallback: Optional[Dict[str, str]] = None,
    ) -> Tuple[Dict[str, str], List[str]]:
        """
        Choose the tags to re-apply.

        Saved tags win; fallback values fill required keys the saved set lacks.

        Returns:
            (tags_to_apply, dropped_keys)
        """
        allowed = set(self.allowlist(namespace))
        chosen = {k: v for k, v in saved.items() if k in allowed}
        dropped = sorted(k for k in saved if k not in allowed)
        for key in required_tags(namespace):
            if not chosen.get(key) and fallback and fallback.get(key):
                chosen[key] = fallback[key]
        return chosen, dropped

    def reconcile(
        self,
        resource_id: str,
        saved: Dict[str, str],
        namespace: str,
        fallback: Optional[Dict[str, str]] = None,
    ) -> TagOutcome:
        """
        Re-apply allow-listed tags and verify the required set.

        One re-apply-and-reverify pass is made when verification fails. A
        still-incomplete result is returned with `missing` populated for the
        caller to surface.

        Args:
            resource_id: Destination resource ID
            saved: Tags captured before the resource was deleted
            namespace: Destination namespace
            fallback: Values for required keys absent from `saved`

        Returns:
            TagOutcome
        """
        to_apply, dropped = self.select(saved, namespace, fallback)
        for key in dropped:
            logger.info(f"Dropping non-allow-listed tag '{key}' on {resource_id}")

        outcome = TagOutcome(applied=to_apply, dropped=dropped)
        if to_apply:
            self.api.merge_tags(resource_id, to_apply)

        outcome.missing = missing_tags(self.api.get_tags(resource_id), namespace)
        if not outcome.missing:
            return outcome

        logger.warning(
            f"Tags missing on {resource_id} after apply: {', '.join(outcome.missing)}; re-applying once"
        )
        outcome.reapplied = True
        if to_apply:
            self.api.merge_tags(resource_id, to_apply)
        outcome.missing = missing_tags(self.api.get_tags(resource_id), namespace)
        if outcome.missing:
            logger.error(
                f"INCOMPLETE TAGS on {resource_id}: still missing {', '.join(outcome.missing)}"
            )
        return outcome
