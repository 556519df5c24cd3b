from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field

SHORT_ID_LENGTH = 8


@dataclass(frozen=True, slots=True)
class Account:
    id: str
    credential: str
    name: str | None = None


class AccountRecord(BaseModel):
    """On-disk shape of one account in the accounts file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    org_id: str = Field(alias="orgId", min_length=1)
    session_key: str = Field(alias="sessionKey", min_length=1)
    name: str | None = None

    def to_account(self) -> Account:
        return Account(id=self.org_id, credential=self.session_key, name=self.name or None)

    @classmethod
    def from_account(cls, account: Account) -> AccountRecord:
        return cls(org_id=account.id, session_key=account.credential, name=account.name)


def short_account_id(account_id: str) -> str:
    return f"{account_id[:SHORT_ID_LENGTH]}..."


def account_label(account_id: str, name: str | None) -> str:
    """Log-friendly label, e.g. ``1a2b3c4d... (Work)``."""
    short_id = short_account_id(account_id)
    if name:
        return f"{short_id} ({name})"
    return short_id
