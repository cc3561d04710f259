import uuid

import pytest
from kombu import Connection

from privacy_advisor.scans.models import Scan
from privacy_advisor.scans.queue import DeadLetterChannel, ScanJob, dead_letter_entry, enqueue_scan_job, requeue_dead_letters


def _job(scan_id, url="https://example.com/"):
    return ScanJob(scan_id=scan_id, url=url, normalized_input=url, request_id="req-1")


def test_job_payload_uses_camel_case():
    job = _job("abc")
    payload = job.to_payload()
    assert payload == {"scanId": "abc", "url": "https://example.com/", "normalizedInput": "https://example.com/", "requestId": "req-1"}
    assert ScanJob.model_validate(payload) == job


def test_enqueue_is_idempotent(db, make_scan):
    scan_id = make_scan()
    published = []

    assert enqueue_scan_job(db, _job(scan_id), publish=published.append) is True
    assert enqueue_scan_job(db, _job(scan_id), publish=published.append) is False
    assert [j.scan_id for j in published] == [scan_id]
    db.expire_all()
    assert db.get(Scan, scan_id).job_id == scan_id


def test_enqueue_releases_claim_when_publish_fails(db, make_scan):
    scan_id = make_scan()

    def broken(job):
        raise ConnectionError("broker down")

    with pytest.raises(ConnectionError):
        enqueue_scan_job(db, _job(scan_id), publish=broken)
    db.expire_all()
    assert db.get(Scan, scan_id).job_id is None


def test_dead_letter_entry_shape():
    entry = dead_letter_entry(_job("abc"), "Scan exceeded 100 ms", is_timeout=True)
    assert set(entry) == {"scanId", "url", "requestId", "error", "isTimeout", "failedAt"}
    assert entry["isTimeout"] is True


def test_dead_letter_channel_roundtrip_over_memory_broker():
    channel = DeadLetterChannel(lambda: Connection("memory://"), f"test.dead.{uuid.uuid4().hex}")
    channel.publish({"scanId": "a"})
    channel.publish({"scanId": "b"})
    channel.publish({"scanId": "c"})

    assert [e["scanId"] for e in channel.drain(2)] == ["a", "b"]
    assert [e["scanId"] for e in channel.drain(10)] == ["c"]
    assert channel.drain(10) == []


def test_requeue_dead_letters(db, make_scan, dead_letters):
    scan_id = make_scan(status="error", job_id=None, stall_count=2)
    dead_letters.publish(dead_letter_entry(_job(scan_id), "boom", is_timeout=False))
    dead_letters.publish({"scanId": "missing", "url": "https://gone.example/"})
    published = []

    assert requeue_dead_letters(db, channel=dead_letters, publish=published.append) == 1
    assert [j.scan_id for j in published] == [scan_id]
    assert published[0].request_id == "req-1"

    db.expire_all()
    scan = db.get(Scan, scan_id)
    assert scan.status == "queued"
    assert scan.stall_count == 0
    assert scan.job_id == scan_id
