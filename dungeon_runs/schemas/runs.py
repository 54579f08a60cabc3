from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateRunIn(BaseModel):
    """All fields optional so missing ones surface as a 400 from run creation, not a 422."""

    model_config = ConfigDict(populate_by_name=True)

    dungeon_id: Optional[str] = Field(default=None, alias="dungeonId")
    party: Optional[Any] = None
    seed: Optional[str] = None
    wallet_address: Optional[str] = Field(default=None, alias="walletAddress")
    payment_hash: Optional[str] = Field(default=None, alias="paymentHash")
