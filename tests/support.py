"""Shared fixtures for the test suite."""

import os
import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from pastehost.config import normalize_config  # noqa: E402
from pastehost.keys import Notifier  # noqa: E402
from pastehost.models import APIKey  # noqa: E402


ENV_KEYS = [
    "PASTEHOST_STORAGE_ROOT",
    "PASTEHOST_DATA_DIR",
    "PASTEHOST_UPLOADS_DIR",
    "PASTEHOST_LOGS_DIR",
]

START_TIME = 1_700_000_000.0
DAY = 86_400.0


class FakeClock:
    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent = []

    def send_verification(self, email: str, token: str) -> None:
        if self.fail:
            raise ConnectionRefusedError("smtp unavailable")
        self.sent.append((email, token))


class StorageTestCase(unittest.TestCase):
    """Points every storage path at a throwaway directory."""

    config_overrides: dict = {}

    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name)
        os.environ["PASTEHOST_STORAGE_ROOT"] = str(self.root)
        os.environ["PASTEHOST_DATA_DIR"] = str(self.root / "data")
        os.environ["PASTEHOST_UPLOADS_DIR"] = str(self.root / "uploads")
        os.environ["PASTEHOST_LOGS_DIR"] = str(self.root / "logs")
        self.config = normalize_config(
            dict({"base_url": "http://paste.test", "block_private_urls": False}, **self.config_overrides)
        )
        self.clock = FakeClock()
        self.notifier = RecordingNotifier()

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)

    def build(self, **kwargs):
        from pastehost.services import build_services

        kwargs.setdefault("clock", self.clock)
        kwargs.setdefault("notifier", self.notifier)
        services = build_services(self.config, **kwargs)
        self.addCleanup(services.shutdown, True)
        return services

    @staticmethod
    def make_key(store, key="k" * 48, email="owner@example.com", allow_shortlinks=False):
        api_key = APIKey(
            key=key,
            email=email,
            name="Owner",
            verified=True,
            allow_shortlinks=allow_shortlinks,
            created_at=START_TIME,
        )
        store.insert_api_key(api_key)
        return api_key
