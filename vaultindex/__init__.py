"""VaultIndex: event indexing and state reconstruction for DocuVault / DID contracts."""

__version__ = "0.3.0"
