# tests/test_depot_server.py
"""
End-to-end tests for DepotServer over loopback sockets.

Each test writes plugins into a temporary plugin root, starts a server on
ephemeral ports and talks to it with raw sockets or an UpdateClient.
"""

import json
import socket
import threading
import time

import pytest

from plugin_depot.client.installer import DryRunInstaller
from plugin_depot.client.updater import UpdateClient
from plugin_depot.protocol import ResponseCode, encode_download_index, pack_index
from plugin_depot.server.depot import DepotServer


def client_for(server, installer=None) -> UpdateClient:
    return UpdateClient(
        "127.0.0.1",
        port=server.control_port,
        data_port=server.data_port,
        installer=installer,
        timeout=5,
    )


def raw_exchange(port: int, payload: bytes) -> bytes:
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        sock.sendall(payload)
        chunks = []
        while True:
            chunk = sock.recv(65536)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


class TestControlPlane:
    def test_update_offered_with_downloadable_files(self, make_plugin, running_server):
        """Foo 1.0.0 with two files: every offered index downloads its declared size."""
        make_plugin("foo", version="1.0.0", files={"a.nro": b"A" * 10, "b.nro": b"B" * 2000})
        server = running_server()
        client = client_for(server)

        response = client.request_update("Foo", "0.9.0", beta=False)
        assert response.code == ResponseCode.UPDATE
        assert response.update_plugin is True
        assert response.new_plugin_version == "1.0.0"
        assert len(response.required_files) == 2
        for update_file in response.required_files:
            assert len(client.download(update_file.download_index)) == update_file.size

    def test_up_to_date(self, make_plugin, running_server):
        make_plugin("foo", version="1.0.0")
        server = running_server()
        assert client_for(server).request_update("Foo", "1.0.0").code == ResponseCode.NO_UPDATE

    def test_beta_only_plugin(self, make_plugin, running_server):
        make_plugin("foo", version="2.0.0", beta=True)
        server = running_server()
        client = client_for(server)
        assert client.request_update("Foo", "1.0.0", beta=False).code == ResponseCode.PLUGIN_NOT_FOUND
        assert client.request_update("Foo", "1.0.0", beta=True).code == ResponseCode.UPDATE

    def test_invalid_json(self, make_plugin, running_server):
        make_plugin("foo")
        server = running_server()
        reply = json.loads(raw_exchange(server.control_port, b"{not json}\n"))
        assert reply["code"] == "InvalidRequest"

    def test_reply_survives_trailing_bytes(self, make_plugin, running_server):
        """Bytes sent past the request line are discarded without cutting off the reply."""
        make_plugin("foo", version="1.0.0")
        server = running_server()
        request = b'{"kind": "Update", "plugin_name": "Foo", "plugin_version": "0.1.0"}\n'
        for _ in range(5):
            reply = json.loads(raw_exchange(server.control_port, request + b"x" * 8192))
            assert reply["code"] == "Update"

    def test_metadata_not_found(self, running_server):
        server = running_server()
        reply = json.loads(
            raw_exchange(server.control_port, b'{"kind": "Metadata", "plugin_name": "Ghost"}\n')
        )
        assert reply == json.loads(raw_exchange(
            server.control_port, b'{"kind": "Metadata", "plugin_name": "Ghost", "beta": true}\n'
        ))
        assert reply["found"] is False

    def test_metadata_images_downloadable(self, make_plugin, running_server):
        make_plugin("foo", images={"one.png": b"\x89PNG-one"}, changelog="changes")
        server = running_server()
        client = client_for(server)
        metadata = client.fetch_metadata("Foo")
        assert metadata.image_count == 1
        assert client.download(metadata.images_index) == b"\x89PNG-one"
        assert client.download(metadata.changelog_index) == b"changes"

    def test_many_sequential_requests(self, make_plugin, running_server):
        make_plugin("foo")
        server = running_server()
        client = client_for(server)
        codes = {client.request_update("Foo", "0.1.0").code for _ in range(20)}
        assert codes == {ResponseCode.UPDATE}


class TestDataPlane:
    def test_unknown_index_yields_zero_bytes(self, make_plugin, running_server):
        make_plugin("foo")
        server = running_server()
        index = encode_download_index(server.store.current.fingerprint, 12345)
        assert raw_exchange(server.data_port, pack_index(index)) == b""

    def test_concurrent_downloads(self, make_plugin, running_server):
        """Two transfers of distinct large blobs run side by side and each gets its own bytes."""
        blobs = [bytes(range(256)) * 8192, bytes(reversed(range(256))) * 8192]
        make_plugin("big", name="Big", files={"one.bin": blobs[0], "two.bin": blobs[1]})
        server = running_server()
        indices = [f.download_index for f in server.store.current.resolve("Big").files]
        assert len(set(indices)) == 2

        results = [None, None]

        def fetch(slot):
            results[slot] = client_for(server).download(indices[slot])

        threads = [threading.Thread(target=fetch, args=(i,)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert results[0] == blobs[0]
        assert results[1] == blobs[1]

    def test_trailing_bytes_after_index(self, make_plugin, running_server):
        blob = bytes(range(256)) * 4096
        make_plugin("big", name="Big", files={"big.bin": blob})
        server = running_server()
        index = server.store.current.resolve("Big").files[0].download_index
        for _ in range(5):
            assert raw_exchange(server.data_port, pack_index(index) + b"\x00" * 4096) == blob

    def test_control_plane_answers_during_slow_download(self, make_plugin, running_server):
        """A stalled data-plane peer never blocks the control plane."""
        make_plugin("foo")
        server = running_server()
        with socket.create_connection(("127.0.0.1", server.data_port), timeout=5):
            # Connected but never sends its index
            time.sleep(0.1)
            response = client_for(server).request_update("Foo", "0.1.0")
            assert response.code == ResponseCode.UPDATE


class TestHotReload:
    def test_refresh_invalidates_old_indices(self, make_plugin, running_server):
        plugin_dir = make_plugin("foo", version="1.0.0", files={"a.nro": b"v1"})
        server = running_server()
        client = client_for(server)
        old = client.request_update("Foo", "0.1.0")

        (plugin_dir / "a.nro").write_bytes(b"v2!")
        server.refresh_catalog()

        assert client.download(old.required_files[0].download_index) == b""
        new = client.request_update("Foo", "0.1.0")
        assert client.download(new.required_files[0].download_index) == b"v2!"

    def test_unchanged_refresh_keeps_indices(self, make_plugin, running_server):
        make_plugin("foo", folders={"assets": {"a.txt": b"a"}})
        server = running_server()
        client = client_for(server)
        before = client.request_update("Foo", "0.1.0")
        server.refresh_catalog()
        after = client.request_update("Foo", "0.1.0")
        assert before.required_files == after.required_files

    def test_watcher_triggers_rebuild(self, make_plugin, server_config):
        make_plugin("foo", version="1.0.0")
        config = server_config.model_copy(update={"watch": True, "debounce_seconds": 0.1})
        server = DepotServer(config)
        thread = server.serve_in_thread()
        try:
            client = client_for(server)
            assert client.request_update("Foo", "1.0.0").code == ResponseCode.NO_UPDATE

            make_plugin("foo_next", version="1.1.0")

            deadline = time.monotonic() + 10
            code = None
            while time.monotonic() < deadline:
                code = client.request_update("Foo", "1.0.0").code
                if code == ResponseCode.UPDATE:
                    break
                time.sleep(0.05)
            assert code == ResponseCode.UPDATE
        finally:
            server.stop()
            thread.join(timeout=5)
            server.close()

    def test_broken_plugin_does_not_stop_server(self, make_plugin, plugin_root, running_server):
        make_plugin("good", name="Good")
        (plugin_root / "broken").mkdir()
        (plugin_root / "broken" / "plugin.toml").write_text("name = ")
        server = running_server()
        assert client_for(server).request_update("Good", "0.0.1").code == ResponseCode.UPDATE


class TestLifecycle:
    def test_context_manager_binds_and_releases(self, server_config):
        with DepotServer(server_config) as server:
            assert server.control_port
            assert server.data_port
            assert server.control_port != server.data_port
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", server.control_port), timeout=1)

    def test_poll_once_serves_pending_request(self, make_plugin, server_config):
        make_plugin("foo")
        with DepotServer(server_config) as server:
            sock = socket.create_connection(("127.0.0.1", server.control_port), timeout=5)
            sock.sendall(b'{"kind": "Update", "plugin_name": "Foo", "plugin_version": "0.1.0"}\n')
            data = b""
            deadline = time.monotonic() + 5
            while not data and time.monotonic() < deadline:
                server.poll_once(timeout=0.05)
                sock.settimeout(0.05)
                try:
                    data = sock.recv(65536)
                except socket.timeout:
                    continue
            sock.close()
        assert json.loads(data.split(b"\n")[0])["code"] == "Update"

    def test_full_update_through_server(self, make_plugin, running_server):
        make_plugin("foo", files={"a.nro": b"A"}, folders={"assets": {"x.txt": b"x"}})
        server = running_server()
        installer = DryRunInstaller()
        outcome = client_for(server, installer).check_update("Foo", "0.1.0")
        assert outcome.succeeded
        assert installer.installed_paths == [
            "sd:/plugins/Foo/a.nro",
            "sd:/mods/assets.zip",
            "sd:/mods/assets/x.txt",
        ]
