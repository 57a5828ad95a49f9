import argparse
import logging
import sys

import requests

from swarmcanary.canary_node import CanaryNode
from swarmcanary.common.config import (DEFAULT_HOST, DESCRIPTOR_FILE, LOG_LEVEL, PEER_PORT,
                                       PIECE_LENGTH, TRACKER_PORT, CanaryConfig, announce_url,
                                       setup_logging)
from swarmcanary.common.errors import BadRequest, CanaryError, InvalidHash
from swarmcanary.common.file_utils import hash_file, parse_hash
from swarmcanary.peer.handshake import generate_peer_id
from swarmcanary.tracker.tracker_api import TrackerAPI

logger = logging.getLogger("swarmcanary")


def self_test(node: CanaryNode):
    """Announces to our own tracker from this host"""
    api = TrackerAPI(node.config.announce_url())
    try:
        response = api.announce(node.config.info_hash, generate_peer_id(), node.peer_listener.port)
        logger.info(f"Self-test OK: {response.get(b'warning message', b'').decode(errors='replace')}")
    except (requests.RequestException, BadRequest, CanaryError) as e:
        logger.error(f"Self-test failed: {e}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Runs a BitTorrent tracker and peer listener as an IP-exposure canary.")
    parser.add_argument('-n', '--notify', required=True,
                        help='Command to run on an unexpected IP; %%IP is replaced by the address')
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('-i', '--info', help='Info hash to watch (40 hex characters)')
    source.add_argument('-f', '--file', help='File to build the watched descriptor from')
    parser.add_argument('-H', '--host', default=DEFAULT_HOST, help='Address advertised to peers')
    parser.add_argument('-s', '--server-port', type=int, default=TRACKER_PORT, help='Tracker port')
    parser.add_argument('-p', '--peer-port', type=int, default=PEER_PORT, help='Peer port')
    parser.add_argument('-e', '--expect', action='append', default=[],
                        help='Expected (safe) address; may be repeated')
    parser.add_argument('--piece-length', type=int, default=PIECE_LENGTH)
    parser.add_argument('--descriptor-out', default=DESCRIPTOR_FILE,
                        help='Where to write the descriptor built from --file')
    parser.add_argument('--log-level', default=LOG_LEVEL)
    parser.add_argument('--self-test', action='store_true',
                        help='Announce to the tracker from this host after starting')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.file:
            url = announce_url(args.host, args.server_port)
            info_hash = hash_file(args.file, args.piece_length, url, args.descriptor_out)
            print(f"Info Hash: {info_hash.hex()}")
        else:
            info_hash = parse_hash(args.info)
    except InvalidHash as e:
        logger.error(f"Invalid info hash: {e}")
        return 2
    except (OSError, ValueError) as e:
        logger.error(f"Could not hash {args.file}: {e}")
        return 2

    config = CanaryConfig(
        info_hash=info_hash,
        notify_command=args.notify,
        host=args.host,
        tracker_port=args.server_port,
        peer_port=args.peer_port,
        expected_addresses=tuple(args.expect),
    )

    try:
        node = CanaryNode(config)
        node.start()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    except OSError as e:
        logger.error(f"Could not start listeners: {e}")
        return 1

    if args.self_test:
        self_test(node)

    node.serve_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
