"""
Resolver registry — named SubjectResolver lookup plus a config-driven factory.

Usage:
    from identity.registry import create_resolver
    resolver = create_resolver(get_settings().identity)
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import IdentityConfig
from identity.crm import CrmSubjectResolver
from identity.resolver import PhoneSubjectResolver, SubjectResolver

logger = structlog.get_logger()


class SubjectResolverRegistry:
    """Holds resolvers by name. The phone resolver is always registered."""

    def __init__(self):
        self._resolvers: dict[str, SubjectResolver] = {}
        self.register("phone", PhoneSubjectResolver())

    def register(self, name: str, resolver: SubjectResolver) -> None:
        self._resolvers[name] = resolver
        logger.info("subject_resolver_registered", name=name)

    def get(self, name: str) -> SubjectResolver:
        resolver = self._resolvers.get(name)
        if resolver is None:
            raise KeyError(f"Subject resolver '{name}' not found")
        return resolver

    def default(self, name: Optional[str] = None) -> SubjectResolver:
        """Return the named resolver, or the phone resolver if that name is unknown."""
        if name and name in self._resolvers:
            return self._resolvers[name]
        if name:
            logger.warning("subject_resolver_unknown", name=name, fallback="phone")
        return self._resolvers["phone"]

    @property
    def names(self) -> list[str]:
        return sorted(self._resolvers)


def create_resolver(config: IdentityConfig = None) -> SubjectResolver:
    """Factory: build the configured resolver ("phone" | "crm")."""
    config = config or IdentityConfig()
    registry = SubjectResolverRegistry()

    if config.resolver == "crm":
        registry.register("crm", CrmSubjectResolver(
            crm_base_url=config.crm_base_url,
            api_key=config.crm_api_key,
            fallback_to_phone=config.fallback_to_phone,
            timeout_s=config.crm_timeout_s,
        ))

    return registry.default(config.resolver)
