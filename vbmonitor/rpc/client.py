"""
Node JSON-RPC Client
=====================

A ``ChainReader`` backed by a bitcoind-compatible JSON-RPC endpoint.

Requests follow the JSON-RPC 1.0 dialect spoken by Bitcoin Core and its
forks: a POST of ``{"jsonrpc": "1.0", "id": ..., "method": ..., "params":
[...]}`` authenticated with HTTP basic auth. The node answers with
``{"result": ..., "error": ..., "id": ...}``. When a call fails the node
still sends that envelope, with ``error`` set to ``{"code", "message"}``
and an HTTP 500 status, so the body is decoded before the status is judged.

Every response is decoded into a small typed structure and every field the
monitor relies on is type checked. Anything unexpected becomes a
``TransportError``; nothing untyped leaks past this module.

Two queries are needed per block version: ``getblockhash`` maps a height to
a hash and ``getblockheader`` returns the header, which carries the version.
"""

from __future__ import annotations

import itertools
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import requests

from vbmonitor.core.chain import TransportError

if TYPE_CHECKING:
    from vbmonitor.utils.config import MonitorConfig

logger = logging.getLogger(__name__)

_BLOCK_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


class RPCError(TransportError):
    """
    Raised when the node answers a call with an error object.

    Attributes:
        code: The JSON-RPC error code (e.g. -8 for an out-of-range height).
        message: The node's error message.
    """

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"RPC error {code}: {message}")


@dataclass(frozen=True)
class RPCErrorDetail:
    code: int
    message: str


@dataclass(frozen=True)
class RPCResponse:
    """Decoded JSON-RPC response envelope."""

    result: Any
    error: RPCErrorDetail | None
    id: Any

    @classmethod
    def from_json(cls, payload: Any) -> "RPCResponse":
        """
        Decode a parsed JSON body.

        Raises:
            TransportError: If the body is not a valid response envelope.
        """
        if not isinstance(payload, dict):
            raise TransportError(
                f"Malformed RPC response: expected an object, got {type(payload).__name__}"
            )
        if "result" not in payload and "error" not in payload:
            raise TransportError("Malformed RPC response: no result or error member")

        error = payload.get("error")
        detail = None
        if error is not None:
            if not isinstance(error, dict):
                raise TransportError(f"Malformed RPC error member: {error!r}")
            code = error.get("code")
            message = error.get("message")
            if not isinstance(code, int) or isinstance(code, bool):
                code = 0
            if not isinstance(message, str):
                message = str(message)
            detail = RPCErrorDetail(code=code, message=message)

        return cls(result=payload.get("result"), error=detail, id=payload.get("id"))


@dataclass(frozen=True)
class BlockHeaderInfo:
    """The fields of a ``getblockheader`` result used by the monitor."""

    hash: str
    height: int
    version: int

    @classmethod
    def from_result(cls, result: Any) -> "BlockHeaderInfo":
        """
        Decode a ``getblockheader`` result.

        Raises:
            TransportError: If a field is missing or has the wrong type.
        """
        if not isinstance(result, dict):
            raise TransportError(f"Malformed block header: {result!r}")

        block_hash = result.get("hash")
        height = result.get("height")
        version = result.get("version")

        if not isinstance(block_hash, str) or not _BLOCK_HASH_RE.match(block_hash):
            raise TransportError(f"Malformed block header hash: {block_hash!r}")
        if not _is_int(height) or height < 0:
            raise TransportError(f"Malformed block header height: {height!r}")
        if not _is_int(version):
            raise TransportError(f"Malformed block header version: {version!r}")

        return cls(hash=block_hash, height=height, version=version)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class NodeRPCClient:
    """
    Chain reader talking to a node over JSON-RPC.

    Attributes:
        url: The node's RPC endpoint.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        user: str | None = None,
        password: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        """
        Args:
            url: The RPC endpoint, e.g. ``http://127.0.0.1:9332/``.
            user: RPC username. Basic auth is used only when given.
            password: RPC password.
            timeout: Per-request timeout in seconds.
            session: Session to send requests with; a new one by default.
        """
        self.url = url
        self.timeout = timeout
        self._session = session if session is not None else requests.Session()
        if user is not None:
            self._session.auth = (user, password or "")
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: "MonitorConfig") -> "NodeRPCClient":
        return cls(
            url=config.rpc_url,
            user=config.rpc_user,
            password=config.rpc_password,
            timeout=config.rpc_timeout,
        )

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Raw calls
    # ------------------------------------------------------------------

    def call(self, method: str, *params: Any) -> Any:
        """
        Perform one JSON-RPC call and return its ``result``.

        Args:
            method: RPC method name.
            *params: Positional parameters.

        Returns:
            The decoded ``result`` member.

        Raises:
            RPCError: If the node reports an error.
            TransportError: On connection failures, timeouts, bad HTTP
                statuses without an RPC envelope, or malformed responses.
        """
        request_id = next(self._ids)
        payload = {
            "jsonrpc": "1.0",
            "id": request_id,
            "method": method,
            "params": list(params),
        }

        try:
            response = self._session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"{method} request to {self.url} failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            if response.status_code != 200:
                raise TransportError(
                    f"{method} failed with HTTP {response.status_code}"
                ) from e
            raise TransportError(f"{method} returned a non-JSON body") from e

        decoded = RPCResponse.from_json(body)
        if decoded.error is not None:
            raise RPCError(decoded.error.code, decoded.error.message)
        if response.status_code != 200:
            raise TransportError(f"{method} failed with HTTP {response.status_code}")
        if decoded.id != request_id:
            raise TransportError(
                f"{method} response id {decoded.id!r} does not match request id {request_id}"
            )
        return decoded.result

    # ------------------------------------------------------------------
    # Typed queries
    # ------------------------------------------------------------------

    def current_height(self) -> int:
        """
        Return the height of the node's best chain.

        Raises:
            TransportError: If the query fails or the result is not a height.
        """
        result = self.call("getblockcount")
        if not _is_int(result) or result < 0:
            raise TransportError(f"Malformed getblockcount result: {result!r}")
        return result

    def get_block_hash(self, height: int) -> str:
        """
        Return the hash of the best-chain block at *height*.

        Raises:
            ValueError: If *height* is negative.
            TransportError: If the query fails or the result is not a hash.
        """
        if height < 0:
            raise ValueError(f"Block height cannot be negative: {height}")
        result = self.call("getblockhash", height)
        if not isinstance(result, str) or not _BLOCK_HASH_RE.match(result):
            raise TransportError(f"Malformed getblockhash result: {result!r}")
        return result

    def get_block_header(self, block_hash: str) -> BlockHeaderInfo:
        """
        Return the decoded header of the block with *block_hash*.

        Raises:
            TransportError: If the query fails or the header is malformed.
        """
        result = self.call("getblockheader", block_hash, True)
        return BlockHeaderInfo.from_result(result)

    def block_version_at(self, height: int) -> int:
        """
        Return the raw version of the best-chain block at *height*.

        Raises:
            ValueError: If *height* is negative.
            TransportError: If either query fails, or the node returns a
                header for a different height.
        """
        block_hash = self.get_block_hash(height)
        header = self.get_block_header(block_hash)
        if header.height != height:
            raise TransportError(
                f"Block {block_hash} is at height {header.height}, expected {height}"
            )
        logger.debug(
            "Block %s height %d has version 0x%08x",
            block_hash, height, header.version & 0xFFFFFFFF,
        )
        return header.version

    def __repr__(self) -> str:
        return f"NodeRPCClient(url={self.url!r})"
