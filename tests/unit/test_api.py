"""Tests for the HTTP transport."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from sweteam.config.schema import ApiConfig
from sweteam.interfaces.api import MAX_OUTBOX, APIInterface


class Recorder:
    def __init__(self) -> None:
        self.tasks: list[tuple[str, str, str]] = []
        self.commands: list[tuple[str, list[str]]] = []

    async def on_task(self, repo: str, task: str, conversation_id: str) -> None:
        self.tasks.append((repo, task, conversation_id))

    async def on_command(self, command: str, args: list[str], conversation_id: str) -> str:
        self.commands.append((command, args))
        return f"{command} ok"


@pytest.fixture
def api() -> tuple[APIInterface, Recorder, TestClient]:
    recorder = Recorder()
    iface = APIInterface(recorder.on_task, recorder.on_command, config=ApiConfig(port=0))
    return iface, recorder, TestClient(iface.app)


def test_health(api: tuple[APIInterface, Recorder, TestClient]) -> None:
    _iface, _rec, client = api
    assert client.get("/health").json() == {"status": "ok"}


def test_create_task_with_conversation(api: tuple[APIInterface, Recorder, TestClient]) -> None:
    _iface, rec, client = api
    response = client.post("/task", json={"repo": "acme/widgets", "task": "add login", "conversation_id": "c1"})
    assert response.status_code == 200
    assert response.json() == {"conversation_id": "c1", "status": "queued"}
    assert rec.tasks == [("acme/widgets", "add login", "c1")]


def test_create_task_assigns_conversation(api: tuple[APIInterface, Recorder, TestClient]) -> None:
    _iface, rec, client = api
    conversation_id = client.post("/task", json={"repo": "acme/widgets", "task": "add login"}).json()["conversation_id"]
    assert conversation_id.startswith("api-")
    assert rec.tasks[0][2] == conversation_id


@pytest.mark.parametrize("body", [{"repo": "", "task": "x"}, {"repo": "acme/widgets"}, {}])
def test_create_task_validation(api: tuple[APIInterface, Recorder, TestClient], body: dict[str, str]) -> None:
    _iface, rec, client = api
    assert client.post("/task", json=body).status_code == 422
    assert rec.tasks == []


def test_commands(api: tuple[APIInterface, Recorder, TestClient]) -> None:
    _iface, rec, client = api
    assert client.get("/runs").json() == {"runs": "list ok"}
    assert client.get("/status").json() == {"status": "status ok"}
    assert client.post("/stop", json={"run_id": 7}).json() == {"status": "stop ok"}
    assert rec.commands == [("list", []), ("status", []), ("stop", ["7"])]


def test_respond_without_pending_question(api: tuple[APIInterface, Recorder, TestClient]) -> None:
    _iface, _rec, client = api
    response = client.post("/respond/c1", json={"text": "yes"})
    assert response.status_code == 404


def test_messages_are_buffered_per_conversation(api: tuple[APIInterface, Recorder, TestClient]) -> None:
    iface, _rec, client = api
    asyncio.run(iface.send_message("c1", "[acme/widgets] Task Received"))
    asyncio.run(iface.send_message("c2", "other"))

    body = client.get("/messages/c1").json()
    assert [m["text"] for m in body["messages"]] == ["[acme/widgets] Task Received"]
    assert body["awaiting_response"] is False
    assert client.get("/messages/unknown").json()["messages"] == []


def test_outbox_is_bounded(api: tuple[APIInterface, Recorder, TestClient]) -> None:
    iface, _rec, _client = api

    async def flood() -> None:
        for i in range(MAX_OUTBOX + 5):
            await iface.send_message("c1", str(i))

    asyncio.run(flood())
    assert len(iface.outbox["c1"]) == MAX_OUTBOX
    assert iface.outbox["c1"][0]["text"] == "5"
