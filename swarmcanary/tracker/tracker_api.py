# swarmcanary/tracker/tracker_api.py
"""
Client for announcing to a tracker (used for the canary self-test)
"""
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote_from_bytes

import requests

from ..common import bencode
from ..common.config import PEER_PORT, REQUEST_TIMEOUT
from ..common.errors import BadRequest, MalformedEncoding, UnexpectedType

logger = logging.getLogger(__name__)


class TrackerAPI:
    """Sends HTTP announces and decodes the bencoded answers"""

    def __init__(self, announce_url: str, timeout: float = REQUEST_TIMEOUT):
        self.announce_url = announce_url
        self.timeout = timeout

    def build_query(self, info_hash: bytes, peer_id: bytes, port: int,
                    uploaded: int = 0, downloaded: int = 0, left: int = 0,
                    event: Optional[str] = None, compact: bool = True) -> str:
        params = [
            ("info_hash", quote_from_bytes(info_hash, safe="")),
            ("peer_id", quote_from_bytes(peer_id, safe="")),
            ("port", str(port)),
            ("uploaded", str(uploaded)),
            ("downloaded", str(downloaded)),
            ("left", str(left)),
            ("compact", "1" if compact else "0"),
        ]
        if event:
            params.append(("event", event))
        return "&".join(f"{key}={value}" for key, value in params)

    def announce(self, info_hash: bytes, peer_id: bytes, port: int = PEER_PORT,
                 **kwargs) -> Dict[bytes, Any]:
        """
        Announces to the tracker

        Args:
            info_hash: 20-byte content hash
            peer_id: Our 20-byte peer id
            port: Port we claim to listen on
            **kwargs: uploaded, downloaded, left, event, compact

        Returns:
            Decoded response dictionary

        Raises:
            BadRequest: on a failure reason or any other non-200 answer
            MalformedEncoding: if a 200 answer is not a bencoded dictionary
            requests.RequestException: on network errors
        """
        # the query string is built by hand so raw bytes are not re-encoded
        url = f"{self.announce_url}?{self.build_query(info_hash, peer_id, port, **kwargs)}"
        response = requests.get(url, timeout=self.timeout)

        try:
            body = bencode.expect_dict(bencode.decode_all(response.content))
        except (MalformedEncoding, UnexpectedType):
            if response.status_code == 200:
                raise
            body = {}

        if b"failure reason" in body:
            reason = bencode.expect_bytes(body[b"failure reason"]).decode("utf-8", "replace")
            raise BadRequest(reason, status=response.status_code)
        if response.status_code != 200:
            raise BadRequest(f"unexpected HTTP status {response.status_code}",
                             status=response.status_code)

        logger.info(f"Announced to {self.announce_url}: {body.get(b'warning message', b'')!r}")
        return body

