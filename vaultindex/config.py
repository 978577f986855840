"""
Indexer Configuration

CONFIGURATION:
- VAULTINDEX_RPC_URL: JSON-RPC endpoint (unset = in-memory chain)
- VAULTINDEX_DOCUVAULT_ADDRESS, VAULTINDEX_DID_REGISTRY_ADDRESS,
  VAULTINDEX_DID_VERIFIER_ADDRESS, VAULTINDEX_DID_ISSUER_ADDRESS,
  VAULTINDEX_DID_AUTH_ADDRESS: deployed contract addresses
- VAULTINDEX_START_BLOCK: First block to scan (default: 0)
- VAULTINDEX_BATCH_BLOCKS: Blocks per ingestion batch (default: 500)
- VAULTINDEX_CONFIRMATIONS: Stay this many blocks behind head (default: 0)
- VAULTINDEX_POLL_INTERVAL_SECONDS: Seconds between cycles when caught up (default: 5)
- VAULTINDEX_RPC_TIMEOUT_SECONDS: Per-request RPC timeout (default: 30)
- VAULTINDEX_MAX_RETRIES: Retries for source reads, backfills and commits (default: 5)
- VAULTINDEX_BACKOFF_BASE_SECONDS / VAULTINDEX_BACKOFF_MAX_SECONDS: retry backoff (default: 0.5 / 30)
- VAULTINDEX_DECODE_WORKERS: Threads for parallel decoding (default: 1)
- VAULTINDEX_PREFETCH: Fetch the next batch while committing (default: true)
- VAULTINDEX_SCHEDULER_ENABLED: Run ingestion inside the API process (default: false)
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from .core.abi import ContractRole


_ADDRESS_ENV = {
    ContractRole.DOCU_VAULT: "VAULTINDEX_DOCUVAULT_ADDRESS",
    ContractRole.DID_REGISTRY: "VAULTINDEX_DID_REGISTRY_ADDRESS",
    ContractRole.DID_VERIFIER: "VAULTINDEX_DID_VERIFIER_ADDRESS",
    ContractRole.DID_ISSUER: "VAULTINDEX_DID_ISSUER_ADDRESS",
    ContractRole.DID_AUTH: "VAULTINDEX_DID_AUTH_ADDRESS",
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes")


@dataclass
class IndexerConfig:
    """Configuration for the ingestion pipeline."""
    rpc_url: Optional[str] = None
    contract_addresses: dict[ContractRole, str] = field(default_factory=dict)
    start_block: int = 0
    batch_blocks: int = 500
    confirmations: int = 0
    poll_interval_seconds: float = 5.0
    rpc_timeout_seconds: float = 30.0
    max_retries: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    decode_workers: int = 1
    prefetch: bool = True
    scheduler_enabled: bool = False

    def __post_init__(self):
        if self.batch_blocks < 1:
            raise ValueError("batch_blocks must be at least 1")
        if self.confirmations < 0:
            raise ValueError("confirmations cannot be negative")
        if self.start_block < 0:
            raise ValueError("start_block cannot be negative")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.decode_workers < 1:
            raise ValueError("decode_workers must be at least 1")

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        """Load configuration from environment variables."""
        addresses = {
            role: os.environ[var].lower()
            for role, var in _ADDRESS_ENV.items()
            if os.environ.get(var)
        }
        return cls(
            rpc_url=os.environ.get("VAULTINDEX_RPC_URL") or None,
            contract_addresses=addresses,
            start_block=int(os.environ.get("VAULTINDEX_START_BLOCK", "0")),
            batch_blocks=int(os.environ.get("VAULTINDEX_BATCH_BLOCKS", "500")),
            confirmations=int(os.environ.get("VAULTINDEX_CONFIRMATIONS", "0")),
            poll_interval_seconds=float(os.environ.get("VAULTINDEX_POLL_INTERVAL_SECONDS", "5")),
            rpc_timeout_seconds=float(os.environ.get("VAULTINDEX_RPC_TIMEOUT_SECONDS", "30")),
            max_retries=int(os.environ.get("VAULTINDEX_MAX_RETRIES", "5")),
            backoff_base_seconds=float(os.environ.get("VAULTINDEX_BACKOFF_BASE_SECONDS", "0.5")),
            backoff_max_seconds=float(os.environ.get("VAULTINDEX_BACKOFF_MAX_SECONDS", "30")),
            decode_workers=int(os.environ.get("VAULTINDEX_DECODE_WORKERS", "1")),
            prefetch=_env_bool("VAULTINDEX_PREFETCH", True),
            scheduler_enabled=_env_bool("VAULTINDEX_SCHEDULER_ENABLED", False),
        )

    def address_roles(self) -> Optional[dict[str, ContractRole]]:
        """address -> role for the decoder; None when no addresses are configured."""
        if not self.contract_addresses:
            return None
        return {addr.lower(): role for role, addr in self.contract_addresses.items()}
