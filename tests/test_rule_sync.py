#!/usr/bin/env python3
"""
Tests for the override catalog sync
"""

import hashlib
import json

import httpx
import pytest

from bypass.rule_sync import RuleSyncScheduler, RuleUpdateService, SYNC_JOB_ID
from utils.retry import RetryPolicy
from conftest import RecordingHandler, mock_session

UPDATE_URL = "https://rules.example.net/sites_updated.json"
BASE = {"Example": {"domain": "example.com"}}
UPDATE = {"Updated Site": {"domain": "updated.com"}}


def service_for(store, handler, tmp_path):
    return RuleUpdateService(
        store,
        session=mock_session(handler),
        update_url=UPDATE_URL,
        version_path=str(tmp_path / "data" / "rules_version.txt"),
        retry_policy=RetryPolicy(attempts=2, initial_delay=0),
    )


class TestCheckAndUpdate:

    @pytest.mark.asyncio
    async def test_new_catalog_is_saved_and_loaded(self, make_store, tmp_path):
        body = json.dumps(UPDATE).encode('utf-8')
        store = make_store(BASE)
        service = service_for(store, RecordingHandler(lambda r: httpx.Response(200, content=body)), tmp_path)

        assert await service.check_and_update() is True

        assert store.resolve("https://updated.com/a").key == "Updated Site"
        assert (tmp_path / "data" / "sites_updated.json").read_bytes() == body
        assert (tmp_path / "data" / "rules_version.txt").read_text() == hashlib.sha256(body).hexdigest()

    @pytest.mark.asyncio
    async def test_unchanged_catalog_is_not_rewritten(self, make_store, tmp_path):
        body = json.dumps(UPDATE).encode('utf-8')
        store = make_store(BASE)
        service = service_for(store, RecordingHandler(lambda r: httpx.Response(200, content=body)), tmp_path)

        assert await service.check_and_update() is True
        assert await service.check_and_update() is False

    @pytest.mark.asyncio
    async def test_non_object_payload_is_rejected(self, make_store, tmp_path):
        store = make_store(BASE)
        service = service_for(store, RecordingHandler(lambda r: httpx.Response(200, json=["not", "a", "dict"])),
                              tmp_path)

        assert await service.check_and_update() is False
        assert not (tmp_path / "data" / "sites_updated.json").exists()

    @pytest.mark.asyncio
    async def test_invalid_json_and_empty_body_are_rejected(self, make_store, tmp_path):
        store = make_store(BASE)

        broken = service_for(store, RecordingHandler(lambda r: httpx.Response(200, content=b"{oops")), tmp_path)
        empty = service_for(store, RecordingHandler(lambda r: httpx.Response(200, content=b"  ")), tmp_path)

        assert await broken.check_and_update() is False
        assert await empty.check_and_update() is False
        assert not (tmp_path / "data" / "rules_version.txt").exists()

    @pytest.mark.asyncio
    async def test_server_error_retries_then_keeps_current_rules(self, make_store, tmp_path):
        store = make_store(BASE, override={"Old": {"domain": "old.com"}})
        handler = RecordingHandler(lambda r: httpx.Response(500))
        service = service_for(store, handler, tmp_path)

        assert await service.check_and_update() is False

        assert len(handler.requests) == 2
        await store.ensure_loaded()
        assert store.resolve("https://old.com/a").key == "Old"


class TestScheduler:

    @pytest.mark.asyncio
    async def test_start_registers_interval_job(self, make_store, tmp_path):
        service = service_for(make_store(BASE), RecordingHandler(lambda r: httpx.Response(500)), tmp_path)
        scheduler = RuleSyncScheduler(service, interval_hours=6)

        scheduler.start(run_immediately=False)
        try:
            job = scheduler.scheduler.get_job(SYNC_JOB_ID)
            assert job is not None
            assert job.trigger.interval.total_seconds() == 6 * 3600
            assert job.next_run_time is not None
        finally:
            scheduler.stop()

        assert not scheduler.scheduler.running
