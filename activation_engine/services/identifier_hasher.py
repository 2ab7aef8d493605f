"""
Identifier normalization and hashing.

Ad platforms only accept PII as SHA-256 digests of a canonical form, so
every identifier is normalized per type before hashing:

- email: trim, lowercase; for gmail.com/googlemail.com drop dots in the
  local part and anything from '+' onward
- phone: digits only, rendered in E.164 with a North American default
  (10 digits -> +1XXXXXXXXXX)
- mobile_ad_id: lowercase, hyphens removed
- crm_id: trim, lowercase

Digests are lowercase hex SHA-256 of UTF-8 bytes of normalized value plus
salt. The salt is empty by default: platforms match on unsalted digests.

The hasher holds no state beyond its configuration; create one per use or
inject one.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import List, NamedTuple, Optional, Sequence

from activation_engine.exceptions import IdentifierValidationError
from activation_engine.models.activation import IdentifierType, UserIdentifier

logger = logging.getLogger(__name__)

GMAIL_DOMAINS = frozenset({"gmail.com", "googlemail.com"})

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MOBILE_AD_ID_RE = re.compile(
    r"^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$",
    re.IGNORECASE,
)
_NON_DIGIT_RE = re.compile(r"\D")

MIN_PHONE_DIGITS = 10


class ValidationResult(NamedTuple):
    valid: bool
    error: Optional[str] = None


_VALID = ValidationResult(True)


@dataclass(frozen=True)
class HashConfig:
    """
    Attributes:
        salt: Appended to the normalized value before hashing
        normalize: Whether to normalize before hashing
    """
    salt: str = ""
    normalize: bool = True


class IdentifierHasher:
    """Normalizes, validates and hashes user identifiers."""

    def __init__(self, config: Optional[HashConfig] = None):
        self.config = config or HashConfig()

    # =========================================================================
    # Normalization
    # =========================================================================

    def normalize(self, value: str, identifier_type: IdentifierType) -> str:
        """Return the canonical form of `value` for its identifier type."""
        if not self.config.normalize:
            return value

        identifier_type = IdentifierType(identifier_type)
        if identifier_type == IdentifierType.EMAIL:
            return normalize_email(value)
        if identifier_type == IdentifierType.PHONE:
            return normalize_phone(value)
        if identifier_type == IdentifierType.MOBILE_AD_ID:
            return normalize_mobile_ad_id(value)
        return normalize_crm_id(value)

    # =========================================================================
    # Hashing
    # =========================================================================

    def hash(self, normalized_value: str) -> str:
        """SHA-256 hex digest of the normalized value plus salt."""
        payload = f"{normalized_value}{self.config.salt}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def hash_identifier(self, identifier: UserIdentifier) -> UserIdentifier:
        """Return a hashed copy of a single identifier."""
        normalized = self.normalize(identifier.raw_value, identifier.type)
        return identifier.with_hashed_value(self.hash(normalized))

    def hash_all(self, identifiers: Sequence[UserIdentifier]) -> List[UserIdentifier]:
        """
        Validate and hash a batch of identifiers.

        The batch is all-or-nothing: if any identifier fails validation,
        nothing is hashed and IdentifierValidationError lists every bad
        index. Partial hashing would shift ordinal positions.

        Raises:
            IdentifierValidationError: If any identifier is malformed
        """
        errors = validate_all(identifiers)
        if errors:
            logger.warning(
                "Identifier batch rejected",
                extra={"identifier_count": len(identifiers), "invalid_count": len(errors)},
            )
            raise IdentifierValidationError(errors)

        return [self.hash_identifier(identifier) for identifier in identifiers]


# =============================================================================
# Normalizers
# =============================================================================

def normalize_email(email: str) -> str:
    normalized = email.strip().lower()

    parts = normalized.split("@")
    if len(parts) != 2:
        return normalized

    local, domain = parts
    if domain in GMAIL_DOMAINS:
        local = local.replace(".", "")
        local = local.split("+", 1)[0]

    return f"{local}@{domain}"


def normalize_phone(phone: str) -> str:
    # TODO: numbers outside North America need a real E.164 parser with a
    # per-tenant default region; the 10/11 digit rule assumes +1.
    digits = _NON_DIGIT_RE.sub("", phone)

    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def normalize_mobile_ad_id(mobile_ad_id: str) -> str:
    return mobile_ad_id.lower().replace("-", "")


def normalize_crm_id(crm_id: str) -> str:
    return crm_id.strip().lower()


# =============================================================================
# Validation
# =============================================================================

def validate(identifier: UserIdentifier) -> ValidationResult:
    """Check an identifier's raw value before hashing."""
    value = identifier.raw_value or ""

    try:
        identifier_type = IdentifierType(identifier.type)
    except ValueError:
        return ValidationResult(False, "Unknown identifier type")

    if identifier_type == IdentifierType.EMAIL:
        if not _EMAIL_RE.match(value):
            return ValidationResult(False, "Invalid email format")
    elif identifier_type == IdentifierType.PHONE:
        if len(_NON_DIGIT_RE.sub("", value)) < MIN_PHONE_DIGITS:
            return ValidationResult(False, "Phone number must have at least 10 digits")
    elif identifier_type == IdentifierType.MOBILE_AD_ID:
        if not _MOBILE_AD_ID_RE.match(value):
            return ValidationResult(False, "Invalid mobile advertising ID format")
    elif identifier_type == IdentifierType.CRM_ID:
        if not value.strip():
            return ValidationResult(False, "CRM ID cannot be empty")

    return _VALID


def validate_all(identifiers: Sequence[UserIdentifier]) -> dict:
    """Return {index: reason} for every invalid identifier (empty if all valid)."""
    errors = {}
    for index, identifier in enumerate(identifiers):
        result = validate(identifier)
        if not result.valid:
            errors[index] = result.error
    return errors
