from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from usage_monitor.core.config.settings import get_settings
from usage_monitor.modules.accounts.schemas import Account, AccountRecord

logger = logging.getLogger(__name__)

_RECORDS_ADAPTER = TypeAdapter(list[AccountRecord])


class AccountStore(Protocol):
    def list_accounts(self) -> list[Account]: ...

    def display_name(self, account_id: str) -> str | None: ...


class InMemoryAccountStore:
    def __init__(self, accounts: list[Account] | None = None) -> None:
        self._accounts: list[Account] = list(accounts or [])

    def list_accounts(self) -> list[Account]:
        return list(self._accounts)

    def display_name(self, account_id: str) -> str | None:
        for account in self._accounts:
            if account.id == account_id:
                return account.name
        return None

    def add_or_update(self, account: Account) -> None:
        self._accounts = _upsert(self._accounts, account)

    def remove(self, account_id: str) -> bool:
        remaining = [account for account in self._accounts if account.id != account_id]
        removed = len(remaining) != len(self._accounts)
        self._accounts = remaining
        return removed


class JsonAccountStore:
    """Accounts persisted as a JSON list of ``{"orgId", "sessionKey", "name"}`` objects."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._accounts: list[Account] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def list_accounts(self) -> list[Account]:
        return list(self._accounts)

    def display_name(self, account_id: str) -> str | None:
        for account in self._accounts:
            if account.id == account_id:
                return account.name
        return None

    def add_or_update(self, account: Account) -> None:
        existing = next((item for item in self._accounts if item.id == account.id), None)
        if existing is not None and account.name is None:
            # Updating only the credential keeps the previous name.
            account = Account(id=account.id, credential=account.credential, name=existing.name)
        self._accounts = _upsert(self._accounts, account)
        self._save()

    def remove(self, account_id: str) -> bool:
        remaining = [account for account in self._accounts if account.id != account_id]
        if len(remaining) == len(self._accounts):
            return False
        self._accounts = remaining
        self._save()
        return True

    def _load(self) -> list[Account]:
        if not self._path.exists():
            return []
        try:
            records = _RECORDS_ADAPTER.validate_json(self._path.read_bytes())
        except ValidationError:
            logger.warning("Invalid accounts file path=%s; starting with no accounts", self._path, exc_info=True)
            return []
        return [record.to_account() for record in records]

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [AccountRecord.from_account(account).model_dump(by_alias=True) for account in self._accounts]
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".accounts-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def build_account_store() -> JsonAccountStore:
    return JsonAccountStore(get_settings().accounts_file)


def _upsert(accounts: list[Account], account: Account) -> list[Account]:
    updated = list(accounts)
    for index, existing in enumerate(updated):
        if existing.id == account.id:
            updated[index] = account
            return updated
    updated.append(account)
    return updated
