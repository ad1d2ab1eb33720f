"""
Temporary elevated access for the refresh principal.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from errors import ArmRequestError, ElevatedAccessError
from models import ServerTopology

logger = logging.getLogger(__name__)


def resource_group_scope(topology: ServerTopology) -> str:
    return f"/subscriptions/{topology.subscription_id}/resourceGroups/{topology.resource_group}"


def assignment_name(scope: str, role_definition_id: str, principal_id: str) -> str:
    """Deterministic role assignment name, so a re-run reuses the same assignment."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{scope.lower()}|{role_definition_id}|{principal_id}"))


class ElevatedAccess:
    """Grants role assignments on the involved resource groups and removes them again."""

    def __init__(self, api, principal_id: Optional[str], role_definition_ids: List[str]):
        self.api = api
        self.principal_id = principal_id
        self.role_definition_ids = list(role_definition_ids)
        self.granted: List[Tuple[str, str]] = []

    @staticmethod
    def scopes(topologies: List[Optional[ServerTopology]]) -> List[str]:
        seen: List[str] = []
        for topology in topologies:
            if topology is None:
                continue
            scope = resource_group_scope(topology)
            if scope.lower() not in (s.lower() for s in seen):
                seen.append(scope)
        return seen

    def grant(self, scopes: List[str], dry_run: bool) -> int:
        """
        Create one role assignment per scope and role.

        Returns:
            Number of assignments created (or planned in dry run)

        Raises:
            ElevatedAccessError: If an assignment cannot be created
        """
        planned = 0
        for scope in scopes:
            for role in self.role_definition_ids:
                name = assignment_name(scope, role, self.principal_id)
                planned += 1
                if dry_run:
                    logger.info(f"DRY RUN: Would grant role {role} on {scope}")
                    continue
                try:
                    self.api.create_role_assignment(scope, name, role, self.principal_id)
                except ArmRequestError as e:
                    raise ElevatedAccessError(
                        f"Failed to grant role {role} on {scope}: {e}"
                    ) from e
                self.granted.append((scope, name))
                logger.info(f"Granted role {role} on {scope}")
        return planned

    def revoke(self) -> int:
        """
        Delete every assignment created by `grant`.

        All assignments are attempted before a failure is raised.

        Returns:
            Number of assignments removed

        Raises:
            ElevatedAccessError: If any assignment could not be removed
        """
        removed = 0
        errors: List[str] = []
        for scope, name in self.granted:
            try:
                self.api.delete_role_assignment(scope, name)
                removed += 1
                logger.info(f"Revoked role assignment {name} on {scope}")
            except ArmRequestError as e:
                logger.error(f"Failed to revoke role assignment {name} on {scope}: {e}")
                errors.append(f"{scope}/{name}: {e}")
        self.granted = []
        if errors:
            raise ElevatedAccessError(
                f"{len(errors)} role assignment(s) could not be revoked: {'; '.join(errors)}"
            )
        return removed
