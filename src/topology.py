"""
Topology discovery over Azure Resource Graph.
"""

import logging
from typing import Dict, List, Optional

from errors import DiscoveryError
from models import ResourceKind, ServerRole, ServerTopology
from naming import is_root_namespace

logger = logging.getLogger(__name__)

INVENTORY_QUERY = (
    "Resources | where type =~ '{kind}' "
    "| project id, name, type, location, resourceGroup, subscriptionId, tags, properties"
)


def tag_value(resource: Dict, key: str) -> str:
    """Case-insensitive tag lookup (tag keys are not case-normalised by ARM)."""
    for k, v in (resource.get("tags") or {}).items():
        if k.lower() == key.lower():
            return v or ""
    return ""


def endpoint_of(resource: Dict, kind: ResourceKind) -> str:
    properties = resource.get("properties") or {}
    if kind == ResourceKind.SQL_SERVER:
        return properties.get("fullyQualifiedDomainName", "")
    return (properties.get("primaryEndpoints") or {}).get("blob", "")


class TopologyResolver:
    """Finds servers and storage accounts by their Environment/Type tags."""

    def __init__(self, api):
        self.api = api

    def inventory(self, kind: ResourceKind) -> List[Dict]:
        return self.api.query_resources(INVENTORY_QUERY.format(kind=kind.value))

    def matches(
        self,
        resources: List[Dict],
        environment: str,
        role: ServerRole,
        namespace: Optional[str] = None,
    ) -> List[Dict]:
        """
        Filter inventory rows on Environment, Type and optionally ClientName.

        Named namespaces match on their ClientName tag; the root namespace
        matches rows without one.
        """
        wanted_env = environment.casefold()
        found = []
        for resource in resources:
            if tag_value(resource, "Environment").casefold() != wanted_env:
                continue
            if tag_value(resource, "Type").casefold() != role.value.casefold():
                continue
            if namespace is not None:
                client = tag_value(resource, "ClientName")
                if is_root_namespace(namespace):
                    if client and not is_root_namespace(client):
                        continue
                elif client.casefold() != namespace.casefold():
                    continue
            found.append(resource)
        return found

    def resolve(
        self,
        environment: str,
        role: ServerRole = ServerRole.PRIMARY,
        kind: ResourceKind = ResourceKind.SQL_SERVER,
        namespace: Optional[str] = None,
    ) -> Optional[ServerTopology]:
        """
        Resolve the topology for an environment and role.

        Args:
            environment: Value of the Environment tag
            role: Primary or Secondary
            kind: SQL server or storage account
            namespace: Restrict to a namespace's ClientName tag

        Returns:
            ServerTopology, or None for a Secondary that does not exist

        Raises:
            DiscoveryError: If no Primary matched
            TopologyParseError: If a matched SQL server name cannot be parsed
        """
        resources = self.inventory(kind)
        candidates = self.matches(resources, environment, role, namespace)

        if not candidates:
            if role == ServerRole.SECONDARY:
                logger.info(f"No secondary {kind.value} for environment '{environment}'")
                return None
            found = sorted(
                f"{r.get('name')} (Environment={tag_value(r, 'Environment') or '-'}, "
                f"Type={tag_value(r, 'Type') or '-'})"
                for r in resources
            )
            searched = f"{kind.value} with tags Environment={environment}, Type={role.value}"
            if namespace is not None:
                searched += f", ClientName={namespace}"
            raise DiscoveryError(
                f"No {role.value} {kind.value} found for environment '{environment}'",
                searched_for=searched,
                found=found,
                hint=(
                    "Check the Environment and Type tags on the resource and that the "
                    "signed-in identity can read its subscription"
                ),
            )

        if len(candidates) > 1:
            names = ", ".join(r.get("name", "") for r in candidates)
            logger.warning(
                f"{len(candidates)} {role.value} {kind.value} resources match "
                f"'{environment}' ({names}); using the first"
            )

        chosen = candidates[0]
        endpoint = endpoint_of(chosen, kind)
        if kind == ResourceKind.SQL_SERVER:
            topology = ServerTopology.from_resource(chosen, endpoint, role)
        else:
            # Storage account names carry no delimiters
            topology = ServerTopology(
                name=chosen.get("name", ""),
                endpoint_address=endpoint,
                resource_group=chosen.get("resourceGroup", ""),
                subscription_id=chosen.get("subscriptionId", ""),
                region=chosen.get("location", ""),
                product_token="",
                tier_token="",
                environment_token=environment,
                resource_id=chosen.get("id", ""),
                role=role,
            )
        logger.info(
            f"Resolved {role.value} {kind.value} for '{environment}': "
            f"{topology.name} ({topology.endpoint_address})"
        )
        return topology

    def find_elastic_pool(self, topology: ServerTopology) -> Optional[Dict]:
        """First elastic pool on a server, or None."""
        pools = self.api.list_elastic_pools(topology)
        if not pools:
            logger.info(f"No elastic pool on {topology.name}")
            return None
        if len(pools) > 1:
            logger.warning(
                f"{len(pools)} elastic pools on {topology.name}; using {pools[0].get('name')}"
            )
        return pools[0]

    def find_failover_group(
        self, primary: ServerTopology, secondary: Optional[ServerTopology]
    ) -> Optional[Dict]:
        """Failover group on `primary` whose partner is `secondary`."""
        if secondary is None:
            return None
        for group in self.api.list_failover_groups(primary):
            partners = (group.get("properties") or {}).get("partnerServers") or []
            for partner in partners:
                partner_id = partner.get("id", "")
                if partner_id.rstrip("/").split("/")[-1].lower() == secondary.name.lower():
                    logger.info(f"Failover group {group.get('name')} pairs {primary.name} with {secondary.name}")
                    return group
        logger.warning(f"No failover group pairs {primary.name} with {secondary.name}")
        return None
