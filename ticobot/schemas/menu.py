from typing import Literal, Optional

from pydantic import BaseModel, Field

MenuActionType = Literal["agent_handoff", "account_statement", "await_receipt", "reply"]


class SubMenuItem(BaseModel):
    key: str
    text: str = ""


class MenuItem(BaseModel):
    keyword: str = ""
    reply_message: str = ""
    options: list = Field(default_factory=list)
    submenu: Optional[list[SubMenuItem]] = None
    action: Optional[MenuActionType] = None
