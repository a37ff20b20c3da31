"""Shared redaction rules for middleware log output."""

SENSITIVE_KEYWORDS = (
    "password",
    "passwd",
    "pwd",
    "token",
    "secret",
    "credential",
    "private_key",
    "identity_file",
    "authorization",
)


def is_sensitive_field(field_name: str) -> bool:
    """Check if a field name suggests a credential that must not be logged."""
    field_lower = field_name.lower()
    return any(keyword in field_lower for keyword in SENSITIVE_KEYWORDS)
