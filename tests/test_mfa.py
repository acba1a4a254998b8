"""Unit tests for threatpulse.services.mfa: TOTP, recovery codes and the enrollment flow."""

import tempfile
import threading
import unittest
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from sqlalchemy.orm import sessionmaker

from threatpulse.core.config import get_settings
from threatpulse.core.errors import InvalidInput, MFAAlreadyEnabled, MFAInvalidCode
from threatpulse.models import MFAConfig
from threatpulse.services import accounts, mfa
from tests.support import DatabaseTestCase, make_engine

# RFC 6238 appendix B, SHA-1 seed "12345678901234567890" in base32.
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
NOW = 1_700_000_000.0


class TestTotp(unittest.TestCase):
    def test_rfc6238_vectors(self) -> None:
        self.assertEqual(mfa.generate_totp(RFC_SECRET, 59), "287082")
        self.assertEqual(mfa.generate_totp(RFC_SECRET, 1111111109), "081804")
        self.assertEqual(mfa.generate_totp(RFC_SECRET, 1234567890), "005924")

    def test_verify_accepts_current_and_adjacent_steps(self) -> None:
        current = mfa.generate_totp(RFC_SECRET, NOW)
        previous = mfa.generate_totp(RFC_SECRET, NOW - 30)
        self.assertTrue(mfa.verify_totp(RFC_SECRET, current, window=1, now=NOW))
        self.assertTrue(mfa.verify_totp(RFC_SECRET, previous, window=1, now=NOW))
        self.assertFalse(mfa.verify_totp(RFC_SECRET, previous, window=0, now=NOW))

    def test_verify_rejects_distant_step(self) -> None:
        old = mfa.generate_totp(RFC_SECRET, NOW - 300)
        if old != mfa.generate_totp(RFC_SECRET, NOW):
            self.assertFalse(mfa.verify_totp(RFC_SECRET, old, window=1, now=NOW))

    def test_verify_tolerates_spaces(self) -> None:
        code = mfa.generate_totp(RFC_SECRET, NOW)
        self.assertTrue(mfa.verify_totp(RFC_SECRET, f"{code[:3]} {code[3:]}", now=NOW))

    def test_well_formed_code_is_not_enough(self) -> None:
        wrong = str((int(mfa.generate_totp(RFC_SECRET, NOW)) + 1) % 1_000_000).zfill(6)
        self.assertFalse(mfa.verify_totp(RFC_SECRET, wrong, window=0, now=NOW))

    def test_malformed_codes(self) -> None:
        for code in ("", "12345", "1234567", "12a456", "١٢٣٤٥٦", None):
            with self.subTest(code=code):
                self.assertFalse(mfa.is_totp_format(code))
                self.assertFalse(mfa.verify_totp(RFC_SECRET, code, now=NOW))

    def test_invalid_secret(self) -> None:
        with self.assertRaises(ValueError):
            mfa.generate_totp("not base32!", NOW)
        self.assertFalse(mfa.verify_totp("not base32!", "123456", now=NOW))


class TestSecretsAndCodes(unittest.TestCase):
    def test_secret_shape(self) -> None:
        secret = mfa.generate_secret()
        self.assertEqual(len(secret), 32)
        self.assertTrue(set(secret) <= set(mfa.BASE32_ALPHABET))

    def test_secrets_do_not_repeat(self) -> None:
        self.assertEqual(len({mfa.generate_secret() for _ in range(1000)}), 1000)

    def test_generated_secret_produces_codes(self) -> None:
        self.assertTrue(mfa.is_totp_format(mfa.generate_totp(mfa.generate_secret(), NOW)))

    def test_provisioning_uri(self) -> None:
        uri = mfa.provisioning_uri("ana@co.test", "ABCDEF", "SecureSOC")
        parsed = urlparse(uri)
        self.assertEqual(parsed.scheme, "otpauth")
        self.assertEqual(parsed.netloc, "totp")
        self.assertEqual(parsed.path, "/SecureSOC:ana@co.test")
        query = parse_qs(parsed.query)
        self.assertEqual(query["secret"], ["ABCDEF"])
        self.assertEqual(query["issuer"], ["SecureSOC"])

    def test_provisioning_uri_escapes_label(self) -> None:
        uri = mfa.provisioning_uri("a b@co.test", "ABCDEF", "Secure SOC")
        self.assertIn("Secure%20SOC:a%20b@co.test", uri)

    def test_backup_codes(self) -> None:
        codes = mfa.generate_backup_codes()
        self.assertEqual(len(codes), 10)
        self.assertEqual(len(set(codes)), 10)
        for code in codes:
            self.assertEqual(len(code), 8)
            self.assertTrue(code.isalnum() and code == code.upper())

    def test_normalize_code(self) -> None:
        self.assertEqual(mfa.normalize_code(" ab12-cd34 "), "AB12CD34")
        self.assertEqual(mfa.normalize_code(None), "")
        self.assertEqual(mfa.hash_backup_code("ab12-cd34"), mfa.hash_backup_code("AB12CD34"))


class TestEnrollment(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.account = self.create_account()

    def _enroll(self) -> tuple[str, list[str]]:
        started = mfa.begin_enrollment(self.db, self.account, self.settings)
        code = mfa.generate_totp(started.secret, NOW)
        mfa.verify_enrollment_code(self.db, self.account, code, self.settings, now=NOW)
        return started.secret, mfa.complete_enrollment(self.db, self.account)

    def test_full_enrollment(self) -> None:
        self.assertFalse(mfa.is_enabled(self.db, self.account.id))
        secret, codes = self._enroll()
        self.assertTrue(mfa.is_enabled(self.db, self.account.id))
        self.assertEqual(len(codes), 10)
        config = self.db.get(MFAConfig, self.account.id)
        self.assertEqual(config.secret, secret)
        self.assertIsNone(config.pending_secret)
        self.assertIsNone(config.pending_backup_codes)
        self.assertNotIn(codes[0], config.backup_code_hashes)
        self.assertEqual(len(config.backup_code_hashes), 10)

    def test_start_returns_uri_with_issuer(self) -> None:
        started = mfa.begin_enrollment(self.db, self.account, self.settings)
        self.assertIn(started.secret, started.provisioning_uri)
        self.assertIn(self.settings.MFA_ISSUER, started.provisioning_uri)

    def test_restart_discards_previous_secret(self) -> None:
        first = mfa.begin_enrollment(self.db, self.account, self.settings)
        second = mfa.begin_enrollment(self.db, self.account, self.settings)
        self.assertNotEqual(first.secret, second.secret)
        old_code = mfa.generate_totp(first.secret, NOW)
        if old_code != mfa.generate_totp(second.secret, NOW):
            with self.assertRaises(MFAInvalidCode):
                mfa.verify_enrollment_code(self.db, self.account, old_code, self.settings, now=NOW)

    def test_wrong_code_keeps_enrollment_open(self) -> None:
        started = mfa.begin_enrollment(self.db, self.account, self.settings)
        good = mfa.generate_totp(started.secret, NOW)
        wrong = str((int(good) + 1) % 1_000_000).zfill(6)
        with self.assertRaises(MFAInvalidCode):
            mfa.verify_enrollment_code(self.db, self.account, wrong, self.settings, now=NOW)
        self.assertEqual(
            mfa.verify_enrollment_code(self.db, self.account, good, self.settings, now=NOW), 10
        )

    def test_malformed_code_is_invalid_input(self) -> None:
        mfa.begin_enrollment(self.db, self.account, self.settings)
        with self.assertRaises(InvalidInput):
            mfa.verify_enrollment_code(self.db, self.account, "12ab", self.settings, now=NOW)

    def test_complete_requires_verification(self) -> None:
        mfa.begin_enrollment(self.db, self.account, self.settings)
        with self.assertRaises(InvalidInput):
            mfa.complete_enrollment(self.db, self.account)
        self.assertFalse(mfa.is_enabled(self.db, self.account.id))

    def test_verify_without_enrollment(self) -> None:
        with self.assertRaises(InvalidInput):
            mfa.verify_enrollment_code(self.db, self.account, "123456", self.settings, now=NOW)

    def test_already_enabled(self) -> None:
        self._enroll()
        with self.assertRaises(MFAAlreadyEnabled):
            mfa.begin_enrollment(self.db, self.account, self.settings)

    def test_disable(self) -> None:
        self._enroll()
        self.assertTrue(mfa.disable(self.db, self.account))
        self.assertFalse(mfa.is_enabled(self.db, self.account.id))
        self.assertIsNone(self.db.get(MFAConfig, self.account.id))
        self.assertFalse(mfa.disable(self.db, self.account))


class TestLoginVerification(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.account = self.create_account()
        started = mfa.begin_enrollment(self.db, self.account, self.settings)
        self.secret = started.secret
        mfa.verify_enrollment_code(
            self.db, self.account, mfa.generate_totp(self.secret, NOW), self.settings, now=NOW
        )
        self.codes = mfa.complete_enrollment(self.db, self.account)

    def test_totp_accepted(self) -> None:
        code = mfa.generate_totp(self.secret, NOW + 600)
        mfa.verify_login(self.db, self.account.id, code, False, self.settings, now=NOW + 600)

    def test_totp_rejected(self) -> None:
        good = mfa.generate_totp(self.secret, NOW)
        wrong = str((int(good) + 1) % 1_000_000).zfill(6)
        with self.assertRaises(MFAInvalidCode):
            mfa.verify_login(self.db, self.account.id, wrong, False, self.settings, now=NOW)
        with self.assertRaises(MFAInvalidCode):
            mfa.verify_login(self.db, self.account.id, "abc", False, self.settings, now=NOW)

    def test_recovery_code_is_single_use(self) -> None:
        code = self.codes[3]
        mfa.verify_login(self.db, self.account.id, code, True, self.settings)
        with self.assertRaises(MFAInvalidCode) as first:
            mfa.verify_login(self.db, self.account.id, code, True, self.settings)
        config = self.db.get(MFAConfig, self.account.id)
        self.db.refresh(config)
        self.assertEqual(len(config.backup_code_hashes), 9)
        self.assertEqual(first.exception.message, MFAInvalidCode.default_message)

    def test_recovery_code_normalized(self) -> None:
        code = self.codes[0]
        mfa.verify_login(
            self.db, self.account.id, f" {code[:4].lower()}-{code[4:]} ", True, self.settings
        )

    def test_unknown_recovery_code(self) -> None:
        with self.assertRaises(MFAInvalidCode):
            mfa.verify_login(self.db, self.account.id, "ZZZZZZZZ", True, self.settings)
        with self.assertRaises(MFAInvalidCode):
            mfa.verify_login(self.db, self.account.id, "", True, self.settings)

    def test_totp_is_not_a_recovery_code(self) -> None:
        code = mfa.generate_totp(self.secret, NOW)
        with self.assertRaises(MFAInvalidCode):
            mfa.verify_login(self.db, self.account.id, code, True, self.settings, now=NOW)

    def test_account_without_mfa(self) -> None:
        other = self.create_account(email="other@co.test")
        with self.assertRaises(MFAInvalidCode):
            mfa.verify_login(self.db, other.id, "123456", False, self.settings, now=NOW)

    def test_totp_code_cannot_be_replayed(self) -> None:
        code = mfa.generate_totp(self.secret, NOW + 600)
        mfa.verify_login(self.db, self.account.id, code, False, self.settings, now=NOW + 600)
        with self.assertRaises(MFAInvalidCode):
            mfa.verify_login(self.db, self.account.id, code, False, self.settings, now=NOW + 600)

    def test_earlier_step_rejected_after_later_one(self) -> None:
        later = mfa.generate_totp(self.secret, NOW + 630)
        earlier = mfa.generate_totp(self.secret, NOW + 600)
        mfa.verify_login(self.db, self.account.id, later, False, self.settings, now=NOW + 630)
        if earlier != later:
            with self.assertRaises(MFAInvalidCode):
                mfa.verify_login(self.db, self.account.id, earlier, False, self.settings, now=NOW + 630)

    def test_next_step_accepted_after_previous(self) -> None:
        first = mfa.generate_totp(self.secret, NOW + 600)
        mfa.verify_login(self.db, self.account.id, first, False, self.settings, now=NOW + 600)
        second = mfa.generate_totp(self.secret, NOW + 660)
        mfa.verify_login(self.db, self.account.id, second, False, self.settings, now=NOW + 660)
        config = self.db.get(MFAConfig, self.account.id)
        self.db.refresh(config)
        self.assertEqual(config.last_totp_step, int((NOW + 660) // 30))


class TestConcurrentRecoveryCode(unittest.TestCase):
    """Parallel sign-ins racing on one recovery code: exactly one may succeed."""

    WORKERS = 8

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = make_engine(str(Path(self._tmp.name) / "store.db"))
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self.settings = get_settings()
        db = self.SessionLocal()
        try:
            account = accounts.create_account(db, "race@co.test", "Passw0rd!", "Race")
            started = mfa.begin_enrollment(db, account, self.settings)
            mfa.verify_enrollment_code(
                db, account, mfa.generate_totp(started.secret, NOW), self.settings, now=NOW
            )
            self.codes = mfa.complete_enrollment(db, account)
            self.account_id = account.id
        finally:
            db.close()

    def tearDown(self) -> None:
        self.engine.dispose()
        self._tmp.cleanup()

    def test_only_one_thread_consumes_the_code(self) -> None:
        barrier = threading.Barrier(self.WORKERS)
        results: list[str] = []
        results_lock = threading.Lock()

        def attempt() -> None:
            db = self.SessionLocal()
            try:
                barrier.wait(timeout=10)
                try:
                    mfa.verify_login(db, self.account_id, self.codes[0], True, self.settings)
                    outcome = "ok"
                except MFAInvalidCode:
                    outcome = "rejected"
            finally:
                db.close()
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(self.WORKERS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(len(results), self.WORKERS)
        self.assertEqual(results.count("ok"), 1)
        self.assertEqual(results.count("rejected"), self.WORKERS - 1)

        db = self.SessionLocal()
        try:
            self.assertEqual(len(mfa.get_config(db, self.account_id).backup_code_hashes), 9)
        finally:
            db.close()
