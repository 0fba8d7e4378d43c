"""
Tests for the JSON run output and downstream dispatch.
"""

import json

import pytest
from aiohttp import web
from aiohttp import test_utils

from bountywatch.core.errors import BountyWatchError, FetchError
from bountywatch.core.models import (
    ChangeSet,
    OutcomeState,
    PendingChangeBatch,
    ResourceOutcome,
    RunStatus,
    RunSummary,
    ScanKind,
)
from bountywatch.sinks import DispatchSink, JsonFileSink
from conftest import START, make_entity


def summary(run_id: str = "run1") -> RunSummary:
    return RunSummary(
        run_id=run_id,
        kind=ScanKind.FULL,
        status=RunStatus.SUCCESS,
        started_at=START,
        finished_at=START,
        change_set=ChangeSet(added=[make_entity("acme/a#1")], summary="1 bounties added"),
        outcomes={"acme": ResourceOutcome(resource_id="acme", state=OutcomeState.FIRST_RUN, entity_count=1)},
    )


async def test_json_sink_writes_latest_and_archive(tmp_path):
    sink = JsonFileSink(str(tmp_path / "output"))

    await sink.handle(summary("run1"))

    latest = json.loads((tmp_path / "output" / "latest-run.json").read_text())
    assert latest["run_id"] == "run1"
    assert latest["status"] == "success"
    assert latest["change_set"]["added"][0]["id"] == "acme/a#1"
    assert (tmp_path / "output" / "archive" / "run-2024-01-01.json").exists()


async def test_json_sink_keeps_first_archive_of_the_day(tmp_path):
    sink = JsonFileSink(str(tmp_path))

    await sink.handle(summary("run1"))
    await sink.handle(summary("run2"))

    assert json.loads((tmp_path / "latest-run.json").read_text())["run_id"] == "run2"
    assert json.loads((tmp_path / "archive" / "run-2024-01-01.json").read_text())["run_id"] == "run1"


async def test_json_sink_rejects_other_items(tmp_path):
    with pytest.raises(BountyWatchError):
        await JsonFileSink(str(tmp_path)).handle({"not": "a summary"})


def dispatch_app(received, status=204):
    async def dispatches(request):
        received.append({"headers": dict(request.headers), "body": await request.json()})
        return web.Response(status=status)

    app = web.Application()
    app.router.add_post("/repos/acme/watch/dispatches", dispatches)
    return app


async def test_dispatch_sink_posts_repository_dispatch():
    received = []
    batch = PendingChangeBatch(resource_ids=frozenset({"zio", "acme"}), window_opened_at=START)

    async with test_utils.TestServer(dispatch_app(received)) as server:
        sink = DispatchSink(str(server.make_url("/repos/acme/watch/dispatches")), token="ghp_test")
        try:
            await sink(batch)
        finally:
            await sink.close()

    (request,) = received
    assert request["headers"]["Authorization"] == "Bearer ghp_test"
    assert request["headers"]["Accept"] == "application/vnd.github.v3+json"
    assert request["body"]["event_type"] == "bounty_changed"
    payload = request["body"]["client_payload"]
    assert payload["changed_resource_ids"] == ["acme", "zio"]
    assert payload["batch_size"] == 2
    assert "timestamp" in payload


async def test_dispatch_failure_raises():
    received = []
    batch = PendingChangeBatch(resource_ids=frozenset({"acme"}), window_opened_at=START)

    async with test_utils.TestServer(dispatch_app(received, status=500)) as server:
        sink = DispatchSink(str(server.make_url("/repos/acme/watch/dispatches")))
        try:
            with pytest.raises(FetchError) as excinfo:
                await sink.handle(batch)
        finally:
            await sink.close()

    assert excinfo.value.status == 500
    assert len(received) == 1
