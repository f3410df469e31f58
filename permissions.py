"""Capability checks for audit operations. Anything not granted is denied."""

import logging
from typing import Iterable, Optional, Set, Tuple

import config
from errors import ForbiddenError

logger = logging.getLogger(__name__)

AUDIT_MODULE = "seo-audit"

Grant = Tuple[str, str, str]


class PermissionPolicy:
    """
    Static grant table of (user, module, action) triples.

    Any field may be "*" to match everything, e.g. ("*", "seo-audit", "read")
    lets every identified user read audits.
    """

    def __init__(self, grants: Iterable[Grant] = ()):
        self.grants: Set[Grant] = set(grants)

    @classmethod
    def from_string(cls, raw: str) -> "PermissionPolicy":
        grants = []
        for entry in (raw or "").split(","):
            entry = entry.strip()
            if not entry:
                continue
            parts = entry.split(":")
            if len(parts) != 3:
                logger.warning(f"Ignoring malformed permission grant: {entry!r}")
                continue
            grants.append(tuple(p.strip() for p in parts))
        return cls(grants)

    def check(self, identity: Optional[str], module: str, action: str) -> bool:
        if not identity:
            return False
        for user, grant_module, grant_action in self.grants:
            if user not in ("*", identity):
                continue
            if grant_module not in ("*", module):
                continue
            if grant_action in ("*", action):
                return True
        return False

    def require_permission(self, identity: Optional[str], module: str, action: str) -> None:
        """
        Raise unless `identity` may perform `action` on `module`.

        Raises:
            ForbiddenError: If the permission is not granted
        """
        if not self.check(identity, module, action):
            logger.info(f"Permission denied: user={identity!r} {module}.{action}")
            raise ForbiddenError(
                "Permission denied",
                detail=f"Missing permission {module}.{action}",
            )


def default_policy() -> PermissionPolicy:
    policy = PermissionPolicy.from_string(config.SEO_AUDIT_PERMISSIONS)
    if not policy.grants:
        logger.warning(
            "SEO_AUDIT_PERMISSIONS not set in environment variables. Every audit request will be denied."
        )
    return policy
