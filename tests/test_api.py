import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from src.patchbridge.api.main import create_app
from src.patchbridge.domain.models import Chunk, Done

from .utils import ScriptedGenerator, broker_config, chunks


TWO_FILES = (
    "Two scripts coming up.\n"
    "[CODE:foo/Player.cs]\npublic class Player {}\n[/CODE]\n"
    "[CODE:foo/Enemy.cs]\npublic class Enemy {}\n[/CODE]\n"
)


def _client(project_dir, generator=None, **overrides):
    cfg = broker_config(project_dir, **overrides)
    app = create_app(config=cfg, generator=generator or ScriptedGenerator())
    return TestClient(app)


def _read_until(ws, kind):
    received = []
    while True:
        msg = ws.receive_json()
        received.append(msg)
        if msg.get("type") in (kind, "error"):
            return received


def test_root_and_health(project_dir):
    client = _client(project_dir)
    assert client.get("/").json()["name"] == "patchbridge"
    data = client.get("/health").json()
    assert data["status"] == "ok"
    assert data["backend"] == "ok"
    assert data["timestamp"].endswith("Z")


def test_streamed_generation_writes_both_files(project_dir):
    events = [Chunk(part) for part in chunks(TWO_FILES, 11)]
    events.append(Done(final_text=TWO_FILES, model="gemma:12b", continuation_token=[3]))
    client = _client(project_dir, ScriptedGenerator(events))

    with client.websocket_connect("/ws") as ws:
        welcome = ws.receive_json()
        assert welcome["status"] == "success"
        ws.send_json(
            {"command": "generate", "conversationId": "c1", "message": "player and enemy", "options": {"stream": True}}
        )
        received = _read_until(ws, "code_modification")

    streamed = "".join(m["chunk"] for m in received if m.get("type") == "generation_chunk")
    assert streamed == TWO_FILES
    final = [m for m in received if m.get("type") == "generation"]
    assert final and final[0]["content"] == TWO_FILES

    mods = received[-1]["modifications"]
    assert len(mods) == 2
    assert all(m["success"] for m in mods)
    scripts = project_dir / "Assets" / "Scripts" / "foo"
    assert (scripts / "Player.cs").read_text(encoding="utf-8") == "public class Player {}"
    assert (scripts / "Enemy.cs").read_text(encoding="utf-8") == "public class Enemy {}"


def test_delete_request_leaves_file_intact(project_dir):
    target = project_dir / "Assets" / "Scripts" / "Keep.cs"
    target.parent.mkdir(parents=True)
    target.write_text("original", encoding="utf-8")
    client = _client(project_dir, ScriptedGenerator([Done(final_text="[DELETE:Keep.cs]", model="m")]))

    with client.websocket_connect("/") as ws:
        ws.receive_json()
        ws.send_text('{"command": "chat", "message": "delete Keep"}')
        received = _read_until(ws, "code_modification")

    mods = received[-1]["modifications"]
    assert mods[0]["operation"] == "delete"
    assert mods[0]["success"] is False
    assert target.read_text(encoding="utf-8") == "original"


def test_bad_frames_do_not_close_the_socket(project_dir):
    client = _client(project_dir, ScriptedGenerator([Done(final_text="fine", model="m")]))

    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("not json at all")
        assert ws.receive_json()["error"].startswith("Invalid JSON")
        ws.send_bytes(b'{"command": "generate", "message": "hi"}')
        assert _read_until(ws, "generation")[-1]["content"] == "fine"


@pytest.mark.parametrize("url, headers", [("/ws", {}), ("/ws?api_key=nope", {}), ("/ws", {"x-api-key": "nope"})])
def test_bad_credentials_are_rejected(project_dir, url, headers):
    client = _client(project_dir, auth_enabled=True, api_key="s3cret")
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(url, headers=headers) as ws:
            ws.receive_json()
    assert exc.value.code == 1008


@pytest.mark.parametrize("url, headers", [("/ws?api_key=s3cret", {}), ("/ws", {"x-api-key": "s3cret"})])
def test_good_credentials_are_accepted(project_dir, url, headers):
    client = _client(project_dir, auth_enabled=True, api_key="s3cret")
    with client.websocket_connect(url, headers=headers) as ws:
        assert ws.receive_json()["status"] == "success"


def test_status_counts_sessions(project_dir):
    client = _client(project_dir)
    assert client.get("/status").json()["activeSessions"] == 0
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        data = client.get("/status").json()
        assert data["activeSessions"] == 1
        assert data["uptime"] >= 0
    assert client.get("/status").json()["activeSessions"] == 0


def test_files_endpoint(project_dir):
    target = project_dir / "Assets" / "Scripts" / "Hud.cs"
    target.parent.mkdir(parents=True)
    target.write_text("class Hud {}", encoding="utf-8")
    client = _client(project_dir)

    r = client.get("/files/Hud")
    assert r.status_code == 200
    assert r.json() == {"filePath": "Assets/Scripts/Hud.cs", "content": "class Hud {}"}

    assert client.get("/files/Missing.cs").status_code == 404


def test_metrics_endpoint(project_dir):
    client = _client(project_dir)
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    body = r.text
    assert "patchbridge_request_latency_seconds" in body
    assert "patchbridge_active_sessions" in body
