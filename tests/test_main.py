import json
import os

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

import main
from conftest import fake_chat
from main import app

client = TestClient(app)


def parse_sse(text):
    events = []
    for block in text.strip().split("\n\n"):
        lines = block.split("\n")
        name = lines[0][len("event: "):]
        data = json.loads(lines[1][len("data: "):])
        events.append((name, data))
    return events


@pytest.mark.asyncio
async def test_health_check(registry):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


@pytest.mark.asyncio
async def test_create_and_list_projects(registry):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.post("/api/projects", json={"name": "test project"})
        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["project_id"].startswith("test_project_")

        response = await ac.get("/api/projects")
    projects = response.json()["projects"]
    assert {"project_id": data["project_id"], "in_memory": True} in projects


@pytest.mark.asyncio
async def test_load_project(registry):
    os.makedirs(os.path.join(registry.root, "saved"))
    with open(os.path.join(registry.root, "saved", "index.html"), "w") as f:
        f.write("<p>old</p>")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.post("/api/projects/load", json={"project_id": "saved"})
        assert response.status_code == 200
        assert response.json()["files"] == ["index.html"]

        missing = await ac.post("/api/projects/load", json={"project_id": "nope"})
    assert missing.status_code == 404


def test_update_writes_new_file(registry, monkeypatch):
    pid = client.post("/api/projects", json={"name": "site"}).json()["project_id"]
    monkeypatch.setattr(main, "chat_stream", fake_chat(
        '{"files":[{"path":"index.html","content":"<h1>Hi</h1>"}],',
        '"commands":[]}',
    ))

    response = client.post("/api/projects/update", json={"project_id": pid, "prompt": "make a page"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = parse_sse(response.text)
    assert [d for n, d in events if n == "file-written"] == [{"path": "index.html"}]
    assert events[-1] == ("done", {"project_id": pid})
    with open(os.path.join(registry.root, pid, "index.html"), encoding="utf-8") as f:
        assert f.read() == "<h1>Hi</h1>"

    read = client.get(f"/api/workspace/read?project_id={pid}&path=index.html").json()
    assert read["content"] == "<h1>Hi</h1>"


def test_update_patches_existing_file(registry, monkeypatch):
    pid = client.post("/api/projects", json={}).json()["project_id"]
    registry.get(pid).workspace.put_file("app.js", "const a = 1;\nfoo();\nconst c = 3;")
    body = {"patches": [{"file": "app.js", "instructions": [{"lineNumber": 2, "oldText": "foo", "newText": "bar"}]}]}
    monkeypatch.setattr(main, "chat_stream", fake_chat(json.dumps(body)))

    events = parse_sse(client.post("/api/projects/update", json={"project_id": pid, "prompt": "rename"}).text)
    assert ("file-patched", {"file": "app.js", "instructions": 1, "warnings": [], "errors": []}) in events
    with open(os.path.join(registry.root, pid, "app.js"), encoding="utf-8") as f:
        assert f.read() == "const a = 1;\nbar();\nconst c = 3;"


def test_update_malformed_response(registry, monkeypatch):
    pid = client.post("/api/projects", json={}).json()["project_id"]
    monkeypatch.setattr(main, "chat_stream", fake_chat("not json at all"))

    events = parse_sse(client.post("/api/projects/update", json={"project_id": pid, "prompt": "go"}).text)
    errs = [d for n, d in events if n == "error"]
    assert len(errs) == 1 and errs[0]["kind"] == "MalformedResponse"
    assert os.listdir(os.path.join(registry.root, pid)) == []


def test_update_unknown_project(registry):
    events = parse_sse(client.post("/api/projects/update", json={"project_id": "ghost", "prompt": "hi"}).text)
    assert events == [("error", {
        "kind": "InvalidInput",
        "message": "Invalid projectId or not loaded in memory",
        "fatal": True,
        "state": "Errored",
    })]


def test_update_non_streaming(registry, monkeypatch):
    pid = client.post("/api/projects", json={}).json()["project_id"]
    monkeypatch.setattr(main, "chat_complete", lambda messages: '{"files":[{"path":"a.txt","content":"a"}]}')

    events = parse_sse(client.post("/api/projects/update", json={"project_id": pid, "prompt": "go", "stream": False}).text)
    assert [d["text"] for n, d in events if n == "partial"] == ['{"files":[{"path":"a.txt","content":"a"}]}']
    assert ("file-written", {"path": "a.txt"}) in events


def test_conversation_and_clear(registry, monkeypatch):
    pid = client.post("/api/projects", json={}).json()["project_id"]
    monkeypatch.setattr(main, "chat_stream", fake_chat("{}"))
    client.post("/api/projects/update", json={"project_id": pid, "prompt": "hello"})

    messages = client.get(f"/api/projects/{pid}/conversation").json()["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant"]

    assert client.post("/api/projects/clear", json={"project_id": pid}).json()["ok"] is True
    messages = client.get(f"/api/projects/{pid}/conversation").json()["messages"]
    assert len(messages) == 1


def test_workspace_endpoints_require_resident_project(registry):
    assert client.get("/api/workspace/list?project_id=ghost").status_code == 404
    pid = client.post("/api/projects", json={}).json()["project_id"]
    assert client.get(f"/api/workspace/list?project_id={pid}").json()["files"] == []
    read = client.get(f"/api/workspace/read?project_id={pid}&path=none.txt").json()
    assert read["ok"] is False
    assert "File not found" in read["error"]
