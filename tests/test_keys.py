from unittest import mock

from support import RecordingNotifier, StorageTestCase

from pastehost.errors import (
    Conflict,
    Forbidden,
    NotFound,
    NotificationFailed,
    RateLimited,
    ValidationError,
)
from pastehost.keys import LoggingNotifier, Notifier, SMTPNotifier


class APIKeyServiceTests(StorageTestCase):
    config_overrides = {"api_key_request_limit": 3}

    def setUp(self):
        super().setUp()
        self.services = self.build()
        self.keys = self.services.keys
        self.store = self.services.store

    def test_request_sends_token_and_stores_pending_key(self):
        api_key = self.keys.request_key("dev@example.com", "Dev", "198.51.100.1")
        self.assertEqual(len(api_key.key), 48)
        self.assertEqual(self.notifier.sent, [("dev@example.com", api_key.verify_token)])
        stored = self.store.get_api_key(api_key.key)
        self.assertFalse(stored.verified)
        with self.assertRaises(Forbidden):
            self.keys.authenticate(api_key.key)

    def test_verify_activates_key_once(self):
        api_key = self.keys.request_key("dev@example.com", "Dev", "198.51.100.1")
        verified = self.keys.verify(api_key.verify_token)
        self.assertTrue(verified.verified)
        self.assertEqual(self.keys.authenticate(api_key.key).email, "dev@example.com")
        with self.assertRaises(NotFound):
            self.keys.verify(api_key.verify_token)

    def test_expired_token_is_rejected(self):
        api_key = self.keys.request_key("dev@example.com", "Dev", "198.51.100.1")
        self.clock.advance(24 * 3600)
        with self.assertRaises(NotFound):
            self.keys.verify(api_key.verify_token)

    def test_notifier_failure_rolls_back_key(self):
        services = self.build(notifier=RecordingNotifier(fail=True))
        with self.assertRaises(NotificationFailed):
            services.keys.request_key("dev@example.com", "Dev", "198.51.100.2")
        with services.store.get_db() as conn:
            count = conn.execute("SELECT COUNT(*) FROM api_keys").fetchone()[0]
        self.assertEqual(count, 0)

    def test_existing_verified_email_conflicts(self):
        self.make_key(self.store, email="dev@example.com")
        with self.assertRaises(Conflict):
            self.keys.request_key("DEV@example.com", "Dev", "198.51.100.1")

    def test_invalid_input(self):
        with self.assertRaises(ValidationError):
            self.keys.request_key("not-an-email", "Dev", "198.51.100.1")
        with self.assertRaises(ValidationError):
            self.keys.request_key("dev@example.com", "", "198.51.100.1")

    def test_requests_are_rate_limited_per_ip(self):
        for index in range(3):
            self.keys.request_key(f"user{index}@example.com", "User", "198.51.100.7")
        with self.assertRaises(RateLimited):
            self.keys.request_key("user9@example.com", "User", "198.51.100.7")
        self.keys.request_key("user9@example.com", "User", "198.51.100.8")

    def test_authenticate(self):
        self.assertIsNone(self.keys.authenticate(None))
        self.assertIsNone(self.keys.authenticate(""))
        with self.assertRaises(Forbidden):
            self.keys.authenticate("unknown")
        owner = self.make_key(self.store)
        self.assertEqual(self.keys.authenticate(owner.key).key, owner.key)


class NotifierTests(StorageTestCase):
    def test_base_notifier_cannot_be_instantiated(self):
        with self.assertRaises(TypeError):
            Notifier()

    def test_subclass_must_implement_delivery(self):
        class Silent(Notifier):
            pass

        with self.assertRaises(TypeError):
            Silent()
        LoggingNotifier("http://paste.test").send_verification("dev@example.com", "tok")


class SMTPNotifierTests(StorageTestCase):
    def test_from_env_requires_host(self):
        with mock.patch.dict("os.environ", {"PASTEHOST_SMTP_HOST": ""}):
            self.assertIsNone(SMTPNotifier.from_env("http://paste.test"))

    def test_sends_verification_link(self):
        env = {
            "PASTEHOST_SMTP_HOST": "smtp.example.com",
            "PASTEHOST_SMTP_PORT": "2525",
            "PASTEHOST_SMTP_USERNAME": "mailer",
            "PASTEHOST_SMTP_PASSWORD": "secret",
        }
        with mock.patch.dict("os.environ", env):
            notifier = SMTPNotifier.from_env("http://paste.test")
        with mock.patch("pastehost.keys.smtplib.SMTP") as smtp:
            notifier.send_verification("dev@example.com", "tok123")
        smtp.assert_called_once_with("smtp.example.com", 2525, timeout=30)
        client = smtp.return_value.__enter__.return_value
        client.starttls.assert_called_once()
        client.login.assert_called_once_with("mailer", "secret")
        message = client.send_message.call_args[0][0]
        self.assertEqual(message["To"], "dev@example.com")
        self.assertIn("http://paste.test/keys/verify/tok123", message.get_content())
