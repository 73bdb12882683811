"""
Shared fixtures for kvqueue tests.

Records live in RECORD_COLLECTION; queue keys live in QUEUE_COLLECTION.
"""

import json
from dataclasses import dataclass, field
from typing import List

import pytest

from kvqueue import Connection, Record, StoreConfig

RECORD_COLLECTION = 10
QUEUE_COLLECTION = 20


@dataclass
class SampleRecord(Record):
    """JSON-encoded record used across the test suite."""
    id: bytes
    name: str = ""
    number: int = 0
    tags: List[str] = field(default_factory=list)
    data: bytes = b""

    def record_id(self) -> bytes:
        return self.id

    def record_type(self) -> int:
        return RECORD_COLLECTION

    def marshal(self) -> bytes:
        return json.dumps({
            "name": self.name,
            "number": self.number,
            "tags": self.tags,
            "data": self.data.hex(),
        }).encode()

    def unmarshal(self, data: bytes) -> None:
        doc = json.loads(data)
        self.name = doc["name"]
        self.number = doc["number"]
        self.tags = doc["tags"]
        self.data = bytes.fromhex(doc["data"])


def sample_factory(record_id: bytes) -> SampleRecord:
    return SampleRecord(id=record_id)


def make_records(count: int, prefix: str = "rec") -> List[SampleRecord]:
    """Records with ids that sort in creation order."""
    return [
        SampleRecord(
            id=f"{prefix}-{i:03d}".encode(),
            name=f"{prefix} {i}",
            number=i,
            tags=[prefix, str(i % 3)],
        )
        for i in range(count)
    ]


@pytest.fixture
def config():
    """Short idle wait so timing-sensitive tests stay fast."""
    return StoreConfig().with_punch_size(0.2)


@pytest.fixture
def conn(config):
    conn = Connection(store_id=1, config=config)
    yield conn
    conn.clear_db()


@pytest.fixture
def records(conn):
    recs = make_records(10)
    conn.tx(lambda db: db.save(*recs))
    return recs


@pytest.fixture
def queue(conn):
    return conn.queue(QUEUE_COLLECTION, sample_factory)
