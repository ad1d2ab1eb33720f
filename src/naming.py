"""
Destination name derivation.

Resource names embed `{product}-{tier}-{service}-[{namespace}-]{environment}-{region}`.
A destination name is produced from a source name by swapping the
environment (or namespace-environment), region and tier tokens.

Two modes are supported:

- ``substring``: textual replacement of each token across the whole name, in
  the fixed order environment, region, tier. This matches the naming
  outcomes of already-deployed environments and is the default. It is
  fragile when one token value is a substring of another.
- ``segment``: the matched window is rebuilt from typed fields and spliced
  back in once, so tokens can never be substituted twice.
"""

import logging
import re
from typing import List, Optional

from config import ROOT_NAMESPACE
from models import NameDerivationRequest

logger = logging.getLogger(__name__)

SUBSTRING = "substring"
SEGMENT = "segment"


def is_root_namespace(namespace: Optional[str]) -> bool:
    return not namespace or namespace == ROOT_NAMESPACE


def environment_segment(namespace: str, environment: str) -> str:
    """The environment part of a name for a namespace."""
    if is_root_namespace(namespace):
        return environment
    return f"{namespace}-{environment}"


def expected_pattern(req: NameDerivationRequest) -> str:
    """Substring a source name must contain to belong to this refresh."""
    env_segment = environment_segment(req.source_namespace, req.source_environment)
    return (
        f"{req.product}-{req.source_tier}-{req.service}-{env_segment}-{req.source_region}"
    )


def overlapping_tokens(req: NameDerivationRequest) -> List[tuple]:
    """
    Pairs of token values where one is a substring of the other.

    Any pair returned here can cause double substitution in substring mode.
    """
    tokens = {
        "environment": environment_segment(req.source_namespace, req.source_environment),
        "region": req.source_region,
        "tier": req.source_tier,
    }
    pairs = []
    names = list(tokens)
    for i, a in enumerate(names):
        for b in names[i + 1 :]:
            va, vb = tokens[a], tokens[b]
            if va and vb and (va in vb or vb in va):
                pairs.append((a, b))
    return pairs


def derive_name(req: NameDerivationRequest, mode: str = SUBSTRING) -> Optional[str]:
    """
    Derive the destination name for a source resource.

    Args:
        req: Derivation inputs
        mode: ``substring`` or ``segment``

    Returns:
        Destination name, or None when the source name does not match the
        expected pattern for its namespace
    """
    pattern = expected_pattern(req)
    if pattern not in req.source_name:
        logger.debug(f"'{req.source_name}' does not contain '{pattern}', skipping")
        return None

    source_env = environment_segment(req.source_namespace, req.source_environment)
    dest_env = environment_segment(req.destination_namespace, req.destination_environment)

    if mode == SEGMENT:
        window = (
            f"{req.product}-{req.destination_tier}-{req.service}-"
            f"{dest_env}-{req.destination_region}"
        )
        return req.source_name.replace(pattern, window, 1)

    if mode != SUBSTRING:
        raise ValueError(f"Unknown derivation mode: {mode}")

    name = req.source_name
    # Order matters: environment, then region, then tier
    if source_env != dest_env:
        name = name.replace(source_env, dest_env)
    if req.source_region != req.destination_region:
        name = name.replace(req.source_region, req.destination_region)
    if req.source_tier != req.destination_tier:
        name = name.replace(req.source_tier, req.destination_tier)
    return name


def infer_service(
    name: str,
    product: str,
    tier: str,
    namespace: str,
    environment: str,
    region: str,
) -> Optional[str]:
    """
    Extract the service token from a name that follows the convention.

    Only single-segment services are inferred; a hyphenated service would be
    indistinguishable from a namespace, so those must be configured.

    Returns:
        The service token, or None if the name does not follow the convention
    """
    env_segment = environment_segment(namespace, environment)
    regex = (
        rf"{re.escape(product)}-{re.escape(tier)}-(?P<service>[A-Za-z0-9]+)"
        rf"-{re.escape(env_segment)}-{re.escape(region)}"
    )
    match = re.search(regex, name)
    if not match:
        return None
    return match.group("service")
