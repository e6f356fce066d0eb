import fnmatch
import unittest
from unittest.mock import MagicMock

from botocore.exceptions import ClientError
from redis import exceptions as redis_exceptions

from filevault.chunks import InMemoryChunkStore, RedisChunkStore, S3ChunkStore
from filevault.errors import BlobIdCollision, BlobNotFound, StorageError


def _client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def make_s3_client(objects):
    """MagicMock S3 client backed by a dict of key -> bytes."""
    client = MagicMock()

    def put_object(Bucket, Key, Body, ContentType):
        objects[Key] = Body

    def get_object(Bucket, Key):
        if Key not in objects:
            raise _client_error("NoSuchKey", "GetObject")
        body = MagicMock()
        body.read.return_value = objects[Key]
        return {"Body": body}

    def list_objects_v2(Bucket, Prefix, MaxKeys=1000):
        keys = sorted(k for k in objects if k.startswith(Prefix))[:MaxKeys]
        return {"KeyCount": len(keys), "Contents": [{"Key": k} for k in keys]}

    def paginate(Bucket, Prefix):
        keys = sorted(k for k in objects if k.startswith(Prefix))
        return [{"Contents": [{"Key": k} for k in keys]}] if keys else [{}]

    def delete_objects(Bucket, Delete):
        for obj in Delete["Objects"]:
            objects.pop(obj["Key"], None)

    client.put_object.side_effect = put_object
    client.get_object.side_effect = get_object
    client.list_objects_v2.side_effect = list_objects_v2
    client.get_paginator.return_value.paginate.side_effect = paginate
    client.delete_objects.side_effect = delete_objects
    return client


class FakeRedis:
    def __init__(self):
        self.data = {}

    def set(self, key, value, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    def get(self, key):
        return self.data.get(key)

    def exists(self, *keys):
        return sum(1 for key in keys if key in self.data)

    def scan_iter(self, match):
        return [key for key in list(self.data) if fnmatch.fnmatchcase(key, match)]

    def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)

    def close(self):
        pass


class InMemoryChunkStoreTests(unittest.TestCase):
    def test_put_get_delete(self):
        store = InMemoryChunkStore()
        store.put("a" * 32, 0, b"one")
        store.put("a" * 32, 1, b"two")
        self.assertEqual(list(store.get("a" * 32)), [b"one", b"two"])
        store.delete("a" * 32)
        store.delete("a" * 32)
        with self.assertRaises(BlobNotFound):
            store.get("a" * 32)

    def test_rejects_overwrite(self):
        store = InMemoryChunkStore()
        store.put("a" * 32, 0, b"one")
        with self.assertRaises(BlobIdCollision):
            store.put("a" * 32, 0, b"again")

    def test_blobs_are_isolated(self):
        store = InMemoryChunkStore()
        store.put("a" * 32, 0, b"a")
        store.put("b" * 32, 0, b"b")
        store.delete("a" * 32)
        self.assertEqual(list(store.get("b" * 32)), [b"b"])


class S3ChunkStoreTests(unittest.TestCase):
    def setUp(self):
        self.objects = {}
        self.client = make_s3_client(self.objects)
        self.store = S3ChunkStore(bucket="vault", prefix="uploads", client=self.client)

    def test_put_writes_one_object_per_chunk(self):
        self.store.put("a" * 32, 0, b"ab")
        self.store.put("a" * 32, 1, b"cd")
        self.assertEqual(
            sorted(self.objects),
            [f"uploads/{'a' * 32}/00000000", f"uploads/{'a' * 32}/00000001"],
        )
        self.assertEqual(list(self.store.get("a" * 32)), [b"ab", b"cd"])

    def test_missing_blob(self):
        self.assertFalse(self.store.exists("a" * 32))
        with self.assertRaises(BlobNotFound):
            self.store.get("a" * 32)

    def test_delete_removes_all_chunks(self):
        for sequence in range(3):
            self.store.put("a" * 32, sequence, b"x")
        self.store.put("b" * 32, 0, b"y")
        self.store.delete("a" * 32)
        self.store.delete("a" * 32)
        self.assertEqual(list(self.objects), [f"uploads/{'b' * 32}/00000000"])

    def test_write_failure_is_storage_error(self):
        self.client.put_object.side_effect = _client_error("AccessDenied", "PutObject")
        with self.assertRaises(StorageError):
            self.store.put("a" * 32, 0, b"x")

    def test_read_failure_is_storage_error(self):
        self.store.put("a" * 32, 0, b"x")
        self.client.get_object.side_effect = _client_error("SlowDown", "GetObject")
        with self.assertRaises(StorageError):
            list(self.store.get("a" * 32))


class RedisChunkStoreTests(unittest.TestCase):
    def setUp(self):
        self.client = FakeRedis()
        self.store = RedisChunkStore(key_prefix="test:chunks", client=self.client)

    def test_put_get_delete(self):
        self.store.put("a" * 32, 0, b"ab")
        self.store.put("a" * 32, 1, b"c")
        self.store.put("b" * 32, 0, b"z")
        self.assertTrue(self.store.exists("a" * 32))
        self.assertEqual(list(self.store.get("a" * 32)), [b"ab", b"c"])
        self.store.delete("a" * 32)
        self.assertFalse(self.store.exists("a" * 32))
        self.assertEqual(list(self.client.data), [f"test:chunks:{'b' * 32}:0"])

    def test_rejects_overwrite(self):
        self.store.put("a" * 32, 0, b"ab")
        with self.assertRaises(BlobIdCollision):
            self.store.put("a" * 32, 0, b"cd")

    def test_connection_error_is_storage_error(self):
        client = MagicMock()
        client.set.side_effect = redis_exceptions.ConnectionError("reset")
        store = RedisChunkStore(client=client)
        with self.assertRaises(StorageError):
            store.put("a" * 32, 0, b"x")


if __name__ == "__main__":
    unittest.main()
