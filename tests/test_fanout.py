"""
test_fanout.py — Plate fingerprints and recipient resolution.

Run with:
    pytest tests/test_fanout.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.fanout import (
    fingerprint_plate,
    normalize_plate,
    resolve_recipients,
    validate_fingerprint,
)
from backend.app.core.errors import ValidationError

FINGERPRINT = "a" * 64


class TestFingerprint:

    def test_normalisation(self):
        assert normalize_plate("  abc 123 ") == "ABC123"
        assert normalize_plate("a\tb c") == "ABC"

    def test_equivalent_spellings_share_a_fingerprint(self):
        assert fingerprint_plate("abc 123", "s") == fingerprint_plate(" ABC123 ", "s")

    def test_secret_changes_fingerprint(self):
        assert fingerprint_plate("ABC123", "one") != fingerprint_plate("ABC123", "two")

    def test_hex_digest(self):
        fp = fingerprint_plate("ABC123", "s")
        assert len(fp) == 64
        assert validate_fingerprint(fp) == fp

    def test_empty_plate_rejected(self):
        with pytest.raises(ValidationError):
            fingerprint_plate("   ", "s")

    @pytest.mark.parametrize("bad", ["", "   ", "has space", "x" * 129, "semi;colon"])
    def test_malformed_fingerprint_rejected(self, bad):
        with pytest.raises(ValidationError):
            validate_fingerprint(bad)


class TestResolveRecipients:

    async def test_no_registrations_is_empty_set(self, session_factory):
        async with session_factory() as session:
            assert await resolve_recipients(session, FINGERPRINT) == set()

    async def test_all_registrants_returned(self, accounts, session_factory):
        for uid in ("alice", "bob", "carol"):
            await accounts.register_plate(uid, FINGERPRINT)
        await accounts.register_plate("dave", "b" * 64)

        async with session_factory() as session:
            assert await resolve_recipients(session, FINGERPRINT) == {"alice", "bob", "carol"}

    async def test_repeat_registration_counted_once(self, accounts, session_factory):
        await accounts.register_plate("alice", FINGERPRINT)
        await accounts.register_plate("alice", FINGERPRINT)

        async with session_factory() as session:
            assert await resolve_recipients(session, FINGERPRINT) == {"alice"}
