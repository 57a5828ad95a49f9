import socket

import pytest
from conftest import CANARY_PEER_ID, CLIENT_PEER_ID, INFO_HASH, OTHER_HASH, announce_query

from swarmcanary.canary.evaluator import CanaryEvaluator
from swarmcanary.common import bencode
from swarmcanary.common.messages import EventSource
from swarmcanary.peer.handshake import Handshake
from swarmcanary.peer.peer_listener import PeerListener
from swarmcanary.tracker.swarm_registry import SwarmRegistry
from swarmcanary.tracker.tracker_server import (AnnounceRequest, TrackerServer,
                                                encode_peers_compact, parse_query)
from swarmcanary.common.errors import BadRequest

PEER_PORT = 16384


@pytest.fixture
def events():
    return []


@pytest.fixture
def registry(clock):
    return SwarmRegistry(ttl=600, clock=clock)


@pytest.fixture
def tracker(registry, events):
    return TrackerServer(INFO_HASH, registry, on_event=events.append, peer_id=CANARY_PEER_ID,
                         host="127.0.0.1", peer_port=PEER_PORT, max_peers=50)


@pytest.fixture
def client(tracker):
    return tracker.app.test_client()


def announce(client, remote_addr="203.0.113.5", **params):
    response = client.get("/announce", query_string=announce_query(**params),
                          environ_base={"REMOTE_ADDR": remote_addr})
    return response.status_code, bencode.decode_all(response.data)


def test_parse_query_keeps_raw_bytes():
    params = parse_query(b"info_hash=%00%FF%41b&peer_id=abc&a=1&a=2&sp=x+y")
    assert params["info_hash"] == b"\x00\xffAb"
    assert params["a"] == b"1"
    assert params["sp"] == b"x y"


def test_announce_request_defaults():
    request = AnnounceRequest.from_params({"info_hash": INFO_HASH, "peer_id": CLIENT_PEER_ID,
                                           "port": b"6881", "event": b"bogus"})
    assert request.left == 0
    assert request.event == ""
    assert request.compact is False
    assert request.numwant is None


@pytest.mark.parametrize("params", [
    {"peer_id": CLIENT_PEER_ID, "port": b"1"},
    {"info_hash": INFO_HASH[:19], "peer_id": CLIENT_PEER_ID, "port": b"1"},
    {"info_hash": INFO_HASH, "port": b"1"},
    {"info_hash": INFO_HASH, "peer_id": CLIENT_PEER_ID},
    {"info_hash": INFO_HASH, "peer_id": CLIENT_PEER_ID, "port": b"0"},
    {"info_hash": INFO_HASH, "peer_id": CLIENT_PEER_ID, "port": b"70000"},
    {"info_hash": INFO_HASH, "peer_id": CLIENT_PEER_ID, "port": b"http"},
    {"info_hash": INFO_HASH, "peer_id": CLIENT_PEER_ID, "port": b"1", "left": b"-5"},
])
def test_announce_request_rejects(params):
    with pytest.raises(BadRequest):
        AnnounceRequest.from_params(params)


def test_first_announce_gets_canary_peer(client, events):
    status, body = announce(client, compact=1)

    assert status == 200
    assert body[b"interval"] == 300
    assert body[b"min interval"] == 150
    assert body[b"peers"] == bytes([127, 0, 0, 1, 0x40, 0x00])
    assert body[b"warning message"] == b"Your IP is 203.0.113.5"
    assert body[b"incomplete"] == 1
    assert body[b"complete"] == 0

    assert len(events) == 1
    assert events[0].observed_address == "203.0.113.5"
    assert events[0].source is EventSource.TRACKER
    assert events[0].info_hash == INFO_HASH


def test_other_peers_listed_before_canary(client):
    announce(client, remote_addr="10.0.0.1", peer_id=b"A" * 20, port=1111)
    announce(client, remote_addr="10.0.0.2", peer_id=b"B" * 20, port=2222)

    _, body = announce(client, remote_addr="10.0.0.3", peer_id=b"C" * 20, port=3333)

    peers = body[b"peers"]
    assert [(p[b"ip"], p[b"port"], p[b"peer id"]) for p in peers] == [
        (b"10.0.0.1", 1111, b"A" * 20),
        (b"10.0.0.2", 2222, b"B" * 20),
        (b"127.0.0.1", PEER_PORT, CANARY_PEER_ID),
    ]


def test_compact_peers(client):
    announce(client, remote_addr="10.0.0.1", peer_id=b"A" * 20, port=6881)

    _, body = announce(client, remote_addr="10.0.0.2", peer_id=b"B" * 20, compact=1)

    assert body[b"peers"] == bytes([10, 0, 0, 1, 0x1a, 0xe1, 127, 0, 0, 1, 0x40, 0x00])


def test_no_peer_id(client):
    _, body = announce(client, no_peer_id=1)
    assert body[b"peers"] == [{b"ip": b"127.0.0.1", b"port": PEER_PORT}]


def test_numwant_limits_peers(client):
    for i in range(5):
        announce(client, remote_addr=f"10.0.0.{i}", peer_id=bytes([65 + i]) * 20)

    _, body = announce(client, peer_id=b"Z" * 20, numwant=2)
    assert len(body[b"peers"]) == 2
    assert body[b"peers"][-1][b"peer id"] == CANARY_PEER_ID

    _, body = announce(client, peer_id=b"Z" * 20, numwant=0)
    assert body[b"peers"] == []


def test_short_hash_is_rejected(client, registry, events):
    status, body = announce(client, info_hash=INFO_HASH[:19])

    assert status == 400
    assert b"failure reason" in body
    assert events == []
    assert len(registry) == 0


def test_missing_port_is_rejected(client, events):
    status, body = announce(client, port=None)
    assert status == 400
    assert b"port" in body[b"failure reason"]
    assert events == []


def test_unknown_hash(client, registry, events):
    status, body = announce(client, info_hash=OTHER_HASH)

    assert status == 404
    assert body == {b"failure reason": b"Invalid info hash."}
    assert events == []
    assert len(registry) == 0


def test_stopped_removes_peer(client, registry):
    announce(client, remote_addr="10.0.0.1", peer_id=b"A" * 20)
    assert len(registry) == 1

    status, _ = announce(client, remote_addr="10.0.0.1", peer_id=b"A" * 20, event="stopped")
    assert status == 200
    assert len(registry) == 0


def test_reannounce_updates_address(client, registry):
    announce(client, remote_addr="10.0.0.1", peer_id=b"A" * 20)
    announce(client, remote_addr="10.0.0.9", peer_id=b"A" * 20)

    assert [r.address for r in registry.list(INFO_HASH)] == ["10.0.0.9"]


def test_ipv4_mapped_address_is_normalized(client, events):
    _, body = announce(client, remote_addr="::ffff:198.51.100.7")

    assert events[0].observed_address == "198.51.100.7"
    assert body[b"warning message"] == b"Your IP is 198.51.100.7"


def test_ipv6_peers_only_in_dict_form(client):
    announce(client, remote_addr="2001:db8::1", peer_id=b"A" * 20)

    _, detailed = announce(client, remote_addr="10.0.0.2", peer_id=b"B" * 20)
    _, compact = announce(client, remote_addr="10.0.0.2", peer_id=b"B" * 20, compact=1)

    assert detailed[b"peers"][0][b"ip"] == b"2001:db8::1"
    assert compact[b"peers"] == bytes([127, 0, 0, 1, 0x40, 0x00])


def test_unknown_path_is_bencoded(client):
    response = client.get("/scrape")
    assert response.status_code == 404
    assert b"failure reason" in bencode.decode_all(response.data)


def test_wrong_method(client):
    response = client.post("/announce")
    assert response.status_code == 405
    assert b"failure reason" in bencode.decode_all(response.data)


def test_encode_peers_compact_skips_ipv6():
    peers = [(b"a", "1.2.3.4", 1), (b"b", "::1", 2), (b"c", "255.255.255.255", 65535)]
    assert encode_peers_compact(peers) == b"\x01\x02\x03\x04\x00\x01" + b"\xff" * 6


class TestCanaryThroughTracker:
    @pytest.fixture
    def evaluator(self, notifier, clock):
        return CanaryEvaluator(["127.0.0.1", "::1", "192.0.2.10"], notifier, cooldown=10,
                               clock=clock)

    @pytest.fixture
    def client(self, registry, evaluator):
        tracker = TrackerServer(INFO_HASH, registry, on_event=evaluator.observe,
                                peer_id=CANARY_PEER_ID, peer_port=PEER_PORT)
        return tracker.app.test_client()

    def test_expected_address_is_silent(self, client, notifier):
        announce(client, remote_addr="192.0.2.10")
        announce(client, remote_addr="::ffff:127.0.0.1")
        assert notifier.calls == []

    def test_unexpected_address_fires_once_per_cooldown(self, client, notifier, clock):
        announce(client, remote_addr="203.0.113.5")
        announce(client, remote_addr="203.0.113.5")
        assert notifier.calls == ["203.0.113.5"]

        clock.advance(10)
        announce(client, remote_addr="203.0.113.5")
        assert notifier.calls == ["203.0.113.5", "203.0.113.5"]

    def test_unknown_hash_never_fires(self, client, notifier):
        announce(client, remote_addr="203.0.113.5", info_hash=OTHER_HASH)
        assert notifier.calls == []


@pytest.mark.parametrize("host", ["canary.example.com", "2001:db8::10"])
def test_compact_falls_back_when_host_is_not_ipv4(registry, events, host):
    tracker = TrackerServer(INFO_HASH, registry, on_event=events.append, peer_id=CANARY_PEER_ID,
                            host=host, peer_port=PEER_PORT)

    _, body = announce(tracker.app.test_client(), compact=1)

    assert body[b"peers"] == [{b"ip": host.encode(), b"port": PEER_PORT, b"peer id": CANARY_PEER_ID}]


def test_records_expire_on_registry_clock(client, registry, clock):
    announce(client, remote_addr="10.0.0.1", peer_id=b"A" * 20)
    clock.advance(599)
    assert len(registry.list(INFO_HASH)) == 1

    clock.advance(1)
    _, body = announce(client, remote_addr="10.0.0.2", peer_id=b"B" * 20)
    assert [p[b"peer id"] for p in body[b"peers"]] == [CANARY_PEER_ID]


def test_handshake_does_not_change_listed_port(client, registry, events):
    listener = PeerListener(INFO_HASH, on_event=events.append, peer_id=CANARY_PEER_ID,
                            registry=registry)
    announce(client, remote_addr="10.0.0.1", peer_id=b"A" * 20, port=6881)

    ours, theirs = socket.socketpair()
    with ours, theirs:
        theirs.sendall(Handshake(info_hash=INFO_HASH, peer_id=b"A" * 20).to_bytes())
        listener.handle_connection(ours, ("10.0.0.1", 51413))

    _, body = announce(client, remote_addr="10.0.0.2", peer_id=b"B" * 20)
    assert [(p[b"ip"], p[b"port"]) for p in body[b"peers"]] == [
        (b"10.0.0.1", 6881), (b"127.0.0.1", PEER_PORT)]
