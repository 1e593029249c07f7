from typing import Literal, Optional

from pydantic import BaseModel

AdminJobType = Literal["ping", "sendText", "runScheduler", "state"]


class AdminJob(BaseModel):
    id: str
    type: AdminJobType
    phone: Optional[str] = None
    text: Optional[str] = None
