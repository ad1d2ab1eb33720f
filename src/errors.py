"""
Error taxonomy for the environment refresh tool.

Fatal errors abort the run in execute mode; in dry-run mode the coordinator
records them and keeps simulating so every problem is visible in one pass.
"""

from typing import List, Optional


class RefreshError(Exception):
    """Base class for every error raised by the refresh engine."""


class ConfigurationError(RefreshError):
    """Invalid invocation parameters, detected before any Azure call."""


class DiscoveryError(RefreshError):
    """No topology matched an environment/role lookup."""

    def __init__(
        self,
        message: str,
        searched_for: str = "",
        found: Optional[List[str]] = None,
        hint: str = "",
    ):
        super().__init__(message)
        self.searched_for = searched_for
        self.found = found or []
        self.hint = hint

    def diagnosis(self) -> str:
        """Multi-line explanation for operators."""
        lines = [str(self)]
        if self.searched_for:
            lines.append(f"  Searched for: {self.searched_for}")
        if self.found:
            lines.append(f"  Found:        {', '.join(self.found)}")
        else:
            lines.append("  Found:        nothing")
        if self.hint:
            lines.append(f"  Hint:         {self.hint}")
        return "\n".join(lines)


class TopologyParseError(DiscoveryError):
    """A resource name does not follow the delimited naming convention."""


class ElevatedAccessError(RefreshError):
    """Granting or revoking elevated access failed."""


class CapacityError(RefreshError):
    """Projected free space on a pool violates a threshold."""

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class CopyInitiationError(RefreshError):
    """A copy request could not be issued within the retry budget."""


class CopyTimeoutError(RefreshError):
    """A copy did not reach a ready state within the maximum wait."""


class TagIncompleteWarning(UserWarning):
    """Required tags are still missing after the re-apply pass."""

    def __init__(self, resource: str, missing: List[str]):
        super().__init__(f"{resource}: missing required tags {', '.join(missing)}")
        self.resource = resource
        self.missing = missing


class FragmentError(RefreshError):
    """A SQL configuration fragment is missing or cannot be rendered."""


class ArmRequestError(RefreshError):
    """An Azure Resource Manager request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class StageError(RefreshError):
    """Typed failure of a workflow stage, carrying the original cause."""

    def __init__(self, stage: str, cause: Exception):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause
