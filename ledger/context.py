"""Explicit ledger session passed to every component that talks to the node.

A ``LedgerContext`` binds one JSON-RPC endpoint, one exchange program id
and, optionally, one signing identity. It is constructed by the caller and
handed down by reference instead of living in a module-level global, so
tests can build as many independent contexts as they need.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from addresses import to_pubkey
from .rpc import SolanaRPC

logger = logging.getLogger(__name__)


class KeypairError(Exception):
    """Raised when a signing keypair cannot be loaded"""
    pass


def load_keypair(path: str) -> Keypair:
    """Load a keypair from a JSON array of 64 secret key bytes.

    Raises:
        KeypairError: If the file is missing or does not hold a valid keypair
    """
    key_file = Path(path).expanduser()
    if not key_file.is_file():
        raise KeypairError(f"Keypair file not found: {key_file}")

    try:
        secret = json.loads(key_file.read_text())
        if not isinstance(secret, list) or len(secret) != 64:
            raise ValueError("expected a JSON array of 64 integers")
        keypair = Keypair.from_bytes(bytes(secret))
    except (ValueError, TypeError) as e:
        # Never echo file contents here
        raise KeypairError(f"Invalid keypair file {key_file}: {type(e).__name__}") from e

    logger.info(f"Loaded signing identity {keypair.pubkey()}")
    return keypair


class LedgerContext:
    """Connection endpoint, program id and signing identity for one session.

    Usable as an async context manager::

        async with LedgerContext(url, program_id, payer=kp) as ctx:
            client = LedgerClient(ctx)
    """

    def __init__(
        self,
        rpc_url: str,
        program_id,
        payer: Optional[Keypair] = None,
        commitment: str = "confirmed",
        confirm_timeout: float = 60.0,
        poll_interval: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.program_id: Pubkey = to_pubkey(program_id, "program id")
        self.payer = payer
        self.commitment = commitment
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.rpc = SolanaRPC(rpc_url, transport=transport)

    @classmethod
    def from_settings(
        cls,
        settings: Dict[str, Any],
        payer: Optional[Keypair] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "LedgerContext":
        """Build a context from validated settings.

        The payer is loaded from ``keypair_path`` when not given and the
        setting is present.
        """
        if payer is None and settings.get('keypair_path'):
            payer = load_keypair(settings['keypair_path'])
        return cls(
            settings['rpc_url'],
            settings['program_id'],
            payer=payer,
            commitment=settings.get('commitment', 'confirmed'),
            confirm_timeout=float(settings.get('confirm_timeout', 60)),
            poll_interval=float(settings.get('poll_interval', 2)),
            transport=transport
        )

    @property
    def payer_pubkey(self) -> Optional[Pubkey]:
        return self.payer.pubkey() if self.payer else None

    @property
    def is_open(self) -> bool:
        return self.rpc.is_open

    async def open(self) -> "LedgerContext":
        await self.rpc.open()
        logger.info(
            f"Ledger session opened: {self.rpc.url} program={self.program_id} "
            f"commitment={self.commitment}"
        )
        return self

    async def close(self) -> None:
        if self.rpc.is_open:
            await self.rpc.close()
            logger.info("Ledger session closed")

    async def __aenter__(self) -> "LedgerContext":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f"LedgerContext(rpc_url={self.rpc.url!r}, program_id={self.program_id}, "
            f"payer={self.payer_pubkey})"
        )
