from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from erc20_transfer_indexer.storage.repos import TransferDTO


class TransferOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str = Field(serialization_alias="txHash")
    block_number: int = Field(serialization_alias="blockNumber")
    timestamp: str
    from_address: str = Field(serialization_alias="from")
    to_address: str = Field(serialization_alias="to")
    value_raw: str = Field(serialization_alias="valueRaw")
    value: str
    token_contract: str = Field(serialization_alias="tokenContract")

    @classmethod
    def from_dto(cls, dto: TransferDTO) -> TransferOut:
        return cls(
            tx_hash=dto.tx_hash,
            block_number=dto.block_number,
            timestamp=dto.timestamp.isoformat(),
            from_address=dto.from_address,
            to_address=dto.to_address,
            value_raw=dto.value_raw,
            value=dto.value_decimal,
            token_contract=dto.token_contract,
        )


class TransferPageOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: list[TransferOut]
    next_cursor: str | None = Field(default=None, serialization_alias="nextCursor")


class StatusOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token_contract: str = Field(serialization_alias="tokenContract")
    last_indexed_block: int = Field(serialization_alias="lastIndexedBlock")
    last_updated: datetime | None = Field(serialization_alias="lastUpdated")
    indexer_running: bool = Field(serialization_alias="indexerRunning")
    total_transfers: int = Field(serialization_alias="totalTransfers")


class IndexerHealth(BaseModel):
    running: bool


class HealthOut(BaseModel):
    status: str
    timestamp: datetime
    indexer: IndexerHealth
