"""
Identity Normalizer Module

Canonicalizes raw identity fields (email, phone, names, location) the way the
Conversions API expects them, then hashes them to SHA-256 hex tokens.
Values that already look like a token are passed through unchanged, so
hashing is idempotent.
"""
from typing import Dict, Optional, Any
import hashlib
import re

from models.conversion import IdentityFields

SHA256_HEX = re.compile(r'^[0-9a-f]{64}$')
_NON_PHONE_CHARS = re.compile(r'[^\d+]')
_WHITESPACE = re.compile(r'\s+')

# Short field names used by the Conversions API user_data block
IDENTITY_KINDS = ("em", "ph", "fn", "ln", "ct", "st", "zp", "country", "external_id")


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def is_hashed(value: str) -> bool:
    """True when value already has the shape of a SHA-256 hex token"""
    return bool(SHA256_HEX.match(value))


def normalize_email(email: Any) -> str:
    return str(email or "").strip().lower()


def normalize_phone(phone: Any, country_calling_code: str = "1") -> str:
    """
    Coerce a phone number to E.164.

    Keeps digits and '+'. Without a leading '+', a 10-digit number is treated
    as local to the default country, an 11-digit number starting with the
    country's trunk digit just gets a '+', anything else gets '+' as-is.
    """
    if not phone:
        return ""
    digits = _NON_PHONE_CHARS.sub("", str(phone))
    if not digits:
        return ""
    if digits.startswith("+"):
        return "+" + digits[1:].replace("+", "")
    digits = digits.replace("+", "")
    if len(digits) == 10:
        return f"+{country_calling_code}{digits}"
    if len(digits) == 11 and digits.startswith(country_calling_code[:1]):
        return f"+{digits}"
    return f"+{digits}"


def normalize_name(value: Any) -> str:
    """Names, city, region and country: trimmed and lowercased"""
    return str(value or "").strip().lower()


def normalize_postal_code(value: Any) -> str:
    return _WHITESPACE.sub("", str(value or "")).lower()


def canonicalize(kind: str, raw_value: Any, country_calling_code: str = "1") -> str:
    """Apply the canonical form for a field kind"""
    if kind == "em":
        return normalize_email(raw_value)
    if kind == "ph":
        return normalize_phone(raw_value, country_calling_code)
    if kind == "zp":
        return normalize_postal_code(raw_value)
    if kind == "external_id":
        return str(raw_value or "").strip()
    if kind in ("fn", "ln", "ct", "st", "country"):
        return normalize_name(raw_value)
    raise ValueError(f"Unknown identity kind: {kind}")


def hash_token(kind: str, raw_value: Any, country_calling_code: str = "1") -> Optional[str]:
    """
    Canonicalize and hash one identity field.

    Args:
        kind: Conversions API field name (em, ph, fn, ln, ct, st, zp, country, external_id)
        raw_value: Raw or already hashed value
        country_calling_code: Prefix applied to 10-digit local phone numbers

    Returns:
        64-char lowercase hex token, or None for empty input
    """
    if raw_value is None:
        return None
    text = str(raw_value).strip()
    if not text:
        return None
    if is_hashed(text):
        return text
    canonical = canonicalize(kind, text, country_calling_code)
    if not canonical:
        return None
    return sha256_hex(canonical)


def hash_name_combo(fn_token: Optional[str], ln_token: Optional[str]) -> Optional[str]:
    """Combined first+last name token used by the PII index"""
    if not fn_token or not ln_token:
        return None
    return sha256_hex(f"{fn_token}:{ln_token}")


def hash_identity(identity: IdentityFields, country_calling_code: str = "1") -> Dict[str, str]:
    """Hash every non-empty field of an identity record, keyed by Conversions API name"""
    hashed = {}
    for kind in IDENTITY_KINDS:
        token = hash_token(kind, getattr(identity, kind), country_calling_code)
        if token:
            hashed[kind] = token
    return hashed
