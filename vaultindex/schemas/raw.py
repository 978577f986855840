"""
Raw Log Records

This is what the event source hands us. Nothing here is interpreted yet:
topics and data are opaque hex, and the record may later be retracted
(removed=True) when its block stops being canonical.

ADDRESSING RULES:
- Addresses, hashes and topics are lowercase 0x-prefixed hex
- A record's position is (block_number, log_index), nothing else
- Two records at the same position must be identical
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RawLog(BaseModel):
    """A single log record as delivered by the event source."""

    model_config = ConfigDict(frozen=True)

    contract_address: str
    topics: tuple[str, ...] = ()
    data: str = "0x"
    block_number: int = Field(..., ge=0)
    block_hash: str
    transaction_hash: str
    log_index: int = Field(..., ge=0)
    removed: bool = False

    # Filled in by the source when it can; not part of the log itself
    block_timestamp: Optional[int] = None
    transaction_from: Optional[str] = None

    @field_validator("contract_address", "block_hash", "transaction_hash", "data")
    @classmethod
    def _lower_hex(cls, value: str) -> str:
        return value.lower()

    @field_validator("topics")
    @classmethod
    def _lower_topics(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(t.lower() for t in value)

    @field_validator("transaction_from")
    @classmethod
    def _lower_sender(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def topic0(self) -> Optional[str]:
        return self.topics[0] if self.topics else None

    def identity(self) -> tuple:
        """Fields that must agree for two deliveries to be the same record."""
        return (
            self.contract_address,
            self.topics,
            self.data,
            self.block_number,
            self.block_hash,
            self.transaction_hash,
            self.log_index,
        )
