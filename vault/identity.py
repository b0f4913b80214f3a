import re
from typing import Optional

_WHITESPACE = re.compile(r"\s+")
_IDENTITY_PATTERN = re.compile(r"[0-9]{16}")

def normalize_identity(value: str) -> str:
    return _WHITESPACE.sub("", value)

def parse_identity(value: str) -> Optional[str]:
    """Return the canonical 16-digit identity, or None if the input is not one."""
    normalized = normalize_identity(value)
    if _IDENTITY_PATTERN.fullmatch(normalized) is None:
        return None
    return normalized

def tenant_prefix(identity: str) -> str:
    # fixed-width identities keep prefixes collision-free across tenants
    return f"_{identity}"
