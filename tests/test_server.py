import httpx
import pytest
from conftest import FakeAPI, monospace

import server
from layout_prober import LayoutProber
from store import ReaderStore


@pytest.fixture
def backend(monkeypatch, tmp_path):
    api = FakeAPI()
    monkeypatch.setattr(server, "_api_client", api)
    monkeypatch.setattr(server, "_prober_factory", lambda: LayoutProber(measure=monospace))
    monkeypatch.setattr(server, "_store", ReaderStore(str(tmp_path / "reader.db")))
    monkeypatch.setattr(server, "_sessions", {})
    return api


def _client(client_addr=("127.0.0.1", 5000)) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=server.app, client=client_addr)
    return httpx.AsyncClient(transport=transport, base_url="http://reader")


async def _open(client, **extra) -> dict:
    resp = await client.post("/sessions", json={"book_id": 7, "width": 200, "height": 130, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()


async def test_open_session_and_read_page(backend):
    async with _client() as client:
        data = await _open(client)
        assert data["state"] == "paginated"
        assert data["chapter"]["order"] == 1
        assert data["chapter"]["total_chapters"] == 3
        assert data["total_pages"] > 2
        assert data["position"] == {"chapter_order": 1, "page_number": 1}

        resp = await client.get(f"/sessions/{data['session_id']}/pages/1")
        page = resp.json()
        assert page["page_number"] == 1
        first = page["items"][0]
        assert first["sequence_index"] == 0
        assert "".join(t["text"] for t in first["tokens"]) == first["text"]
        assert first["tokens"][0] == {"kind": "word", "text": "Paragraph", "word_index": 0}

        resp = await client.get(f"/sessions/{data['session_id']}/pages/999")
        assert resp.status_code == 404


async def test_each_session_gets_its_own_prober(backend):
    async with _client() as client:
        first = await _open(client)
        second = await _open(client)
    sessions = server._sessions
    assert sessions[first["session_id"]].prober is not sessions[second["session_id"]].prober


async def test_page_turn_font_and_chapter(backend):
    async with _client() as client:
        data = await _open(client)
        sid = data["session_id"]

        resp = await client.post(f"/sessions/{sid}/page", json={"page_index": 2})
        assert resp.json()["position"] == {"chapter_order": 1, "page_number": 3}

        resp = await client.post(f"/sessions/{sid}/font", json={"font_size": 20})
        assert resp.json()["settings"]["font_size"] == 20
        assert resp.json()["state"] == "paginated"

        resp = await client.post(f"/sessions/{sid}/theme", json={"theme": "neon"})
        assert resp.status_code == 400

        resp = await client.post(f"/sessions/{sid}/chapter", json={"direction": "next"})
        body = resp.json()
        assert body["moved"] is True
        assert body["chapter"]["order"] == 2
        assert body["current_page_index"] == 0


async def test_word_and_chunk_translation(backend):
    async with _client() as client:
        sid = (await _open(client))["session_id"]

        resp = await client.post(f"/sessions/{sid}/words",
                                 json={"word": "sentence", "sequence_index": 0, "word_index": 3})
        body = resp.json()
        assert body["selected"] == [0, 3]
        assert body["translation"]["translated_text"] == "SENTENCE"

        resp = await client.post(f"/sessions/{sid}/chunks/0/translate")
        assert resp.json()["translation"]["in_flight"] is False

        page = (await client.get(f"/sessions/{sid}/pages/1")).json()
        assert page["items"][0]["translation"]["translated_text"].startswith("PARAGRAPH 0")

        resp = await client.post(f"/sessions/{sid}/chunks/3/translate")
        assert resp.status_code == 400


async def test_close_session_saves_position(backend):
    async with _client() as client:
        sid = (await _open(client))["session_id"]
        await client.post(f"/sessions/{sid}/page", json={"page_index": 1})

        resp = await client.delete(f"/sessions/{sid}")
        assert resp.json() == {"closed": sid}
        assert backend.saves[-1].page_number == 2

        resp = await client.get(f"/sessions/{sid}")
        assert resp.status_code == 404


async def test_invalid_viewport_rejected(backend):
    async with _client() as client:
        resp = await client.post("/sessions", json={"book_id": 7, "width": 0, "height": 100})
        assert resp.status_code == 400


async def test_requests_from_outside_are_blocked(backend):
    async with _client(("8.8.8.8", 5000)) as client:
        resp = await client.get("/health")
        assert resp.status_code == 403


async def test_health_reports_backend(backend):
    async with _client() as client:
        resp = await client.get("/health")
        assert resp.json()["status"] == "ok"
