import json
import os

import httpx
import pytest

from servers import SnapshotServer, create_snapshot_app

NODE_INFO_URL = "http://127.0.0.1:3001/info"


class FakeNode:
    """Stands in for the node's info API; writes the requested snapshot file."""

    def __init__(self, status=200, write=True):
        self.status = status
        self.write = write
        self.payloads = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.payloads.append(payload)
        if self.status == 200 and self.write:
            with open(payload["outPath"], "w") as handle:
                json.dump([12345, {"levels": []}], handle)
        return httpx.Response(self.status, json=None if self.status == 200 else {"error": "busy"})


@pytest.fixture()
def snapshot_dir(tmp_path):
    directory = tmp_path / "snapshots"
    directory.mkdir()
    (directory / "l4Snapshots_old.json").write_text('{"old": true}')
    return directory


def _app(snapshot_dir, node):
    client = httpx.Client(transport=httpx.MockTransport(node))
    app = create_snapshot_app(str(snapshot_dir), NODE_INFO_URL, client=client)
    app.testing = True
    return app.test_client()


def test_lists_snapshot_files(snapshot_dir):
    response = _app(snapshot_dir, FakeNode()).get("/snapshots/")
    assert response.status_code == 200
    assert response.get_json() == {"files": ["l4Snapshots_old.json"]}


def test_serves_snapshot_file(snapshot_dir):
    response = _app(snapshot_dir, FakeNode()).get("/snapshots/l4Snapshots_old.json")
    assert response.status_code == 200
    assert response.get_json() == {"old": True}


def test_path_traversal_is_refused(snapshot_dir, tmp_path):
    (tmp_path / "secret.txt").write_text("nope")
    client = _app(snapshot_dir, FakeNode())
    assert client.get("/snapshots/../secret.txt").status_code == 404
    assert client.get("/snapshots/%2e%2e/secret.txt").status_code == 404


def test_missing_file_is_404(snapshot_dir):
    assert _app(snapshot_dir, FakeNode()).get("/snapshots/missing.json").status_code == 404


def test_snapshot_request_returns_path(snapshot_dir):
    node = FakeNode()
    response = _app(snapshot_dir, node).get("/snapshot?type=l4Snapshots&includeUsers=true")

    assert response.status_code == 200
    path = response.get_json()["path"]
    assert os.path.dirname(path) == str(snapshot_dir)
    assert os.path.exists(path)
    (payload,) = node.payloads
    assert payload["type"] == "fileSnapshot"
    assert payload["request"] == {"type": "l4Snapshots", "includeUsers": True, "includeTriggerOrders": False}
    assert payload["includeHeightInOutput"] is True
    assert payload["outPath"] == path


def test_snapshot_request_can_stream_contents(snapshot_dir):
    response = _app(snapshot_dir, FakeNode()).get("/snapshot?type=referrerStates&streamContents=true")
    assert response.status_code == 200
    assert response.get_json() == [12345, {"levels": []}]


def test_node_error_maps_to_bad_gateway(snapshot_dir):
    response = _app(snapshot_dir, FakeNode(status=500)).get("/snapshot?type=l4Snapshots")
    assert response.status_code == 502
    assert "node snapshot request failed" in response.get_json()["error"]


def test_missing_snapshot_file_maps_to_bad_gateway(snapshot_dir):
    response = _app(snapshot_dir, FakeNode(write=False)).get("/snapshot?type=l4Snapshots&streamContents=1")
    assert response.status_code == 502


@pytest.mark.parametrize("query", ["", "?type=trades", "?type=l4Snapshots&includeUsers=maybe"])
def test_bad_snapshot_requests_are_rejected(snapshot_dir, query):
    node = FakeNode()
    response = _app(snapshot_dir, node).get(f"/snapshot{query}")
    assert response.status_code == 400
    assert "error" in response.get_json()
    assert node.payloads == []


def test_server_binds_and_serves(snapshot_dir):
    client = httpx.Client(transport=httpx.MockTransport(FakeNode()))
    server = SnapshotServer(create_snapshot_app(str(snapshot_dir), NODE_INFO_URL, client=client), "127.0.0.1:0")
    server.start()
    try:
        response = httpx.get(f"http://127.0.0.1:{server.bound_port}/snapshots/")
        assert response.json() == {"files": ["l4Snapshots_old.json"]}
    finally:
        server.stop()
    assert not server.started


def test_stop_closes_the_client_it_created(snapshot_dir):
    app = create_snapshot_app(str(snapshot_dir), NODE_INFO_URL)
    owned = app.extensions["owned_http_client"]
    server = SnapshotServer(app, "127.0.0.1:0")
    server.start()
    server.stop()
    assert owned.is_closed
    assert "owned_http_client" not in app.extensions


def test_stop_leaves_an_injected_client_open(snapshot_dir):
    client = httpx.Client(transport=httpx.MockTransport(FakeNode()))
    server = SnapshotServer(create_snapshot_app(str(snapshot_dir), NODE_INFO_URL, client=client), "127.0.0.1:0")
    server.start()
    server.stop()
    assert not client.is_closed
    client.close()
