"""Tests for identity canonicalization and hashing."""

import hashlib

import pytest

from models.conversion import IdentityFields
from modules.normalizer import (
    hash_identity,
    hash_name_combo,
    hash_token,
    is_hashed,
    normalize_email,
    normalize_phone,
    normalize_postal_code,
)


def sha(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


class TestCanonicalForms:
    """Test per-kind canonicalization."""

    def test_email_trimmed_and_lowercased(self):
        assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"

    def test_ten_digit_phone_gets_default_country_code(self):
        assert normalize_phone("(514) 555-0199") == "+15145550199"

    def test_eleven_digit_phone_with_trunk_digit_gets_plus_only(self):
        assert normalize_phone("1-514-555-0199") == "+15145550199"

    def test_plus_prefixed_phone_kept(self):
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_other_lengths_prefixed_as_is(self):
        assert normalize_phone("442079460958") == "+442079460958"

    def test_custom_country_code(self):
        assert normalize_phone("0612345678", country_calling_code="33") == "+330612345678"

    def test_empty_phone(self):
        assert normalize_phone("") == ""
        assert normalize_phone("ext.") == ""

    def test_postal_code_whitespace_removed(self):
        assert normalize_postal_code(" H2X 1Y4 ") == "h2x1y4"


class TestHashToken:
    """Test hash_token."""

    def test_empty_values_return_none(self):
        assert hash_token("em", None) is None
        assert hash_token("em", "") is None
        assert hash_token("fn", "   ") is None

    def test_email_hash_uses_canonical_form(self):
        assert hash_token("em", " Jane@Example.com") == sha("jane@example.com")

    def test_phone_hash_uses_e164(self):
        assert hash_token("ph", "514.555.0199") == sha("+15145550199")

    def test_name_hash(self):
        assert hash_token("fn", " Jane ") == sha("jane")

    @pytest.mark.parametrize("kind,value", [
        ("em", "Jane@Example.com"),
        ("ph", "(514) 555-0199"),
        ("fn", "Jane"),
        ("zp", "H2X 1Y4"),
        ("country", "CA"),
    ])
    def test_hashing_is_idempotent(self, kind, value):
        once = hash_token(kind, value)
        assert hash_token(kind, once) == once
        assert is_hashed(once)

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            hash_token("shoe_size", "42")


class TestHashIdentity:
    """Test hash_identity and the name combo."""

    def test_only_present_fields_hashed(self):
        identity = IdentityFields(em="a@b.co", fn="Jane")
        hashed = hash_identity(identity)
        assert set(hashed) == {"em", "fn"}
        assert hashed["em"] == sha("a@b.co")

    def test_external_id_is_hashed_untrimmed_case(self):
        hashed = hash_identity(IdentityFields(external_id=" Client-42 "))
        assert hashed["external_id"] == sha("Client-42")

    def test_name_combo_requires_both_names(self):
        assert hash_name_combo(sha("jane"), None) is None
        assert hash_name_combo(sha("jane"), sha("doe")) == sha(f"{sha('jane')}:{sha('doe')}")
