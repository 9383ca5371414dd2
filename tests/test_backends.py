import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from botocore.exceptions import ClientError

import support  # noqa: F401

from pastehost.backends import (
    LocalStorageBackend,
    S3StorageBackend,
    StorageHandle,
    StorageRegistry,
    build_backends,
)
from pastehost.config import normalize_config
from pastehost.errors import NotFound, QuotaExceeded, StorageUnavailable


def _client_error(code, operation="GetObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class LocalStorageBackendTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.backend = LocalStorageBackend(self.root)

    def tearDown(self):
        self.tmp.cleanup()

    def test_put_get_delete(self):
        handle = self.backend.put(b"hello world")
        self.assertEqual(handle.backend, "local")
        self.assertTrue(self.backend.exists(handle))
        self.assertEqual(self.backend.read(handle), b"hello world")

        self.backend.delete(handle)
        self.assertFalse(self.backend.exists(handle))
        # Shard directory is pruned once empty.
        self.assertEqual(list(self.root.iterdir()), [])

    def test_identical_content_gets_distinct_handles(self):
        first = self.backend.put(b"same")
        second = self.backend.put(b"same")
        self.assertNotEqual(first, second)
        self.backend.delete(first)
        self.assertEqual(self.backend.read(second), b"same")

    def test_files_are_private_to_owner(self):
        handle = self.backend.put(b"secret")
        mode = os.stat(self.root / handle.path).st_mode & 0o777
        self.assertEqual(mode & 0o077, 0)

    def test_no_temp_files_left_behind(self):
        self.backend.put(b"data")
        self.assertEqual([p for p in self.root.rglob("*.tmp")], [])

    def test_deleting_missing_object_is_not_an_error(self):
        self.backend.delete(StorageHandle("local", "ab/missing"))

    def test_get_missing_object_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.backend.get(StorageHandle("local", "ab/missing"))

    def test_traversal_paths_are_refused(self):
        outside = self.root.parent / "outside.txt"
        handle = StorageHandle("local", "../outside.txt")
        with self.assertRaises(NotFound):
            self.backend.get(handle)
        self.assertFalse(self.backend.exists(handle))
        self.backend.delete(handle)
        self.assertFalse(outside.exists())

    def test_quota_is_enforced(self):
        backend = LocalStorageBackend(self.root, quota_bytes=10)
        backend.put(b"12345")
        with self.assertRaises(QuotaExceeded) as context:
            backend.put(b"123456")
        self.assertEqual(context.exception.current_usage, 5)
        self.assertEqual(context.exception.quota_limit, 10)

    def test_write_failure_is_storage_unavailable(self):
        with mock.patch("pathlib.Path.replace", side_effect=OSError("disk full")):
            with self.assertRaises(StorageUnavailable):
                self.backend.put(b"data")
        self.assertEqual([p for p in self.root.rglob("*") if p.is_file()], [])


class S3StorageBackendTests(unittest.TestCase):
    def setUp(self):
        self.client = mock.MagicMock()
        self.backend = S3StorageBackend("bucket", self.client, prefix="pastes/")

    def test_put_uses_prefixed_key(self):
        handle = self.backend.put(b"payload")
        self.assertEqual(handle.backend, "s3")
        self.assertTrue(handle.path.startswith("pastes/"))
        self.client.put_object.assert_called_once_with(
            Bucket="bucket", Key=handle.path, Body=b"payload"
        )

    def test_put_failure_maps_to_storage_unavailable(self):
        self.client.put_object.side_effect = _client_error("InternalError", "PutObject")
        with self.assertRaises(StorageUnavailable):
            self.backend.put(b"payload")

    def test_put_quota_maps_to_quota_exceeded(self):
        self.client.put_object.side_effect = _client_error("EntityTooLarge", "PutObject")
        with self.assertRaises(QuotaExceeded):
            self.backend.put(b"payload")

    def test_get_missing_maps_to_not_found(self):
        self.client.get_object.side_effect = _client_error("NoSuchKey")
        with self.assertRaises(NotFound):
            self.backend.get(StorageHandle("s3", "pastes/ab/x"))

    def test_read_returns_body(self):
        body = mock.MagicMock()
        body.read.return_value = b"payload"
        self.client.get_object.return_value = {"Body": body}
        self.assertEqual(self.backend.read(StorageHandle("s3", "pastes/ab/x")), b"payload")
        body.close.assert_called_once()

    def test_delete_missing_is_success(self):
        self.client.delete_object.side_effect = _client_error("NoSuchKey", "DeleteObject")
        self.backend.delete(StorageHandle("s3", "pastes/ab/x"))

    def test_delete_failure_propagates(self):
        self.client.delete_object.side_effect = _client_error("AccessDenied", "DeleteObject")
        with self.assertRaises(StorageUnavailable):
            self.backend.delete(StorageHandle("s3", "pastes/ab/x"))

    def test_exists(self):
        self.assertTrue(self.backend.exists(StorageHandle("s3", "k")))
        self.client.head_object.side_effect = _client_error("404", "HeadObject")
        self.assertFalse(self.backend.exists(StorageHandle("s3", "k")))


class StorageRegistryTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.local = LocalStorageBackend(Path(self.tmp.name))

    def tearDown(self):
        self.tmp.cleanup()

    def test_routes_by_handle_backend(self):
        s3 = S3StorageBackend("bucket", mock.MagicMock())
        registry = StorageRegistry(s3, self.local)
        legacy = self.local.put(b"old")

        self.assertEqual(registry.read(legacy), b"old")
        handle = registry.put(b"new")
        self.assertEqual(handle.backend, "s3")
        registry.delete(legacy)
        self.assertFalse(self.local.exists(legacy))

    def test_unknown_backend_is_unavailable(self):
        registry = StorageRegistry(self.local)
        with self.assertRaises(StorageUnavailable):
            registry.get(StorageHandle("gcs", "x"))

    def test_build_backends_defaults_to_local(self):
        registry = build_backends(normalize_config({}), Path(self.tmp.name))
        self.assertIsInstance(registry.active, LocalStorageBackend)

    def test_build_backends_s3(self):
        config = normalize_config(
            {"storage_backend": "s3", "s3_bucket": "pastes", "s3_region": "eu-west-1"}
        )
        with mock.patch("pastehost.backends.boto3.client") as client_factory:
            registry = build_backends(config, Path(self.tmp.name))
        client_factory.assert_called_once_with("s3", endpoint_url=None, region_name="eu-west-1")
        self.assertIsInstance(registry.active, S3StorageBackend)
        self.assertEqual(registry.active.bucket, "pastes")


if __name__ == "__main__":
    unittest.main()
