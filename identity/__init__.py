"""
Identity layer — canonical, channel-independent subject identifiers.

Resolvers:
  - PhoneSubjectResolver (default, "phone_<E.164>")
  - CrmSubjectResolver   (external CRM lookup, phone fallback)
"""
from identity.resolver import (
    SubjectResolver, PhoneSubjectResolver,
    extract_phone, normalize_phone, phone_subject_id,
)
from identity.crm import CrmSubjectResolver
from identity.registry import SubjectResolverRegistry, create_resolver

__all__ = [
    "SubjectResolver", "PhoneSubjectResolver", "CrmSubjectResolver",
    "SubjectResolverRegistry", "create_resolver",
    "extract_phone", "normalize_phone", "phone_subject_id",
]
