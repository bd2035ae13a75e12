from pydantic import BaseModel, Field
from typing import Optional


class IntakeReceipt(BaseModel):
    # Only a receipt identifier; processing results never go back to the caller
    ok: bool = True
    receipt_id: Optional[str] = Field(None, description="Job id, or a throwaway id for dropped deliveries")
    ping: Optional[bool] = None


class IntakeRejection(BaseModel):
    ok: bool = False
    reason: str
