"""
Persistence seam for accounts and invoices.

The CRUD layer that owns these records lives outside this package; ``Store``
is the interface it must provide. ``MemoryStore`` backs tests and ephemeral
runs, ``JsonFileStore`` keeps records across restarts in one JSON file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from arca_mcp.api.models import AccountConfig, Invoice, VoucherType

logger = logging.getLogger(__name__)


class Store(ABC):
    """Account and invoice records consumed by the ARCA clients."""

    @abstractmethod
    def get_account(self, account_id: int) -> AccountConfig | None: ...

    @abstractmethod
    def save_account(self, account: AccountConfig) -> AccountConfig: ...

    @abstractmethod
    def get_invoice(self, invoice_id: int) -> Invoice | None: ...

    @abstractmethod
    def save_invoice(self, invoice: Invoice) -> Invoice:
        """Insert (assigning an id when missing) or replace an invoice."""

    @abstractmethod
    def list_invoices(
        self,
        account_id: int,
        voucher_type: VoucherType | None = None,
        sales_point: int | None = None,
    ) -> list[Invoice]: ...


class MemoryStore(Store):
    """Dict-backed store. Returns copies so callers never share instances."""

    def __init__(self):
        self._accounts: dict[int, AccountConfig] = {}
        self._invoices: dict[int, Invoice] = {}
        self._next_invoice_id = 1
        self._lock = threading.RLock()

    def get_account(self, account_id: int) -> AccountConfig | None:
        with self._lock:
            account = self._accounts.get(account_id)
            return account.model_copy(deep=True) if account else None

    def save_account(self, account: AccountConfig) -> AccountConfig:
        with self._lock:
            stored = account.model_copy(
                deep=True, update={"updated_at": datetime.now(timezone.utc)}
            )
            previous = self._accounts.get(account.id)
            self._accounts[account.id] = stored
            try:
                self._flush()
            except Exception:
                # Keep memory in step with what is on disk
                if previous is None:
                    del self._accounts[account.id]
                else:
                    self._accounts[account.id] = previous
                raise
            return stored.model_copy(deep=True)

    def get_invoice(self, invoice_id: int) -> Invoice | None:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            return invoice.model_copy(deep=True) if invoice else None

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            update = {"updated_at": datetime.now(timezone.utc)}
            if invoice.id is None:
                update["id"] = self._next_invoice_id
            stored = invoice.model_copy(deep=True, update=update)
            previous = self._invoices.get(stored.id)
            next_id = self._next_invoice_id
            self._invoices[stored.id] = stored
            self._next_invoice_id = max(self._next_invoice_id, stored.id + 1)
            try:
                self._flush()
            except Exception:
                if previous is None:
                    del self._invoices[stored.id]
                else:
                    self._invoices[stored.id] = previous
                self._next_invoice_id = next_id
                raise
            return stored.model_copy(deep=True)

    def list_invoices(
        self,
        account_id: int,
        voucher_type: VoucherType | None = None,
        sales_point: int | None = None,
    ) -> list[Invoice]:
        with self._lock:
            return [
                inv.model_copy(deep=True)
                for inv in sorted(self._invoices.values(), key=lambda i: i.id)
                if inv.account_id == account_id
                and (voucher_type is None or inv.voucher_type == voucher_type)
                and (sales_point is None or inv.sales_point == sales_point)
            ]

    def _flush(self) -> None:
        """Persist hook; no-op in memory."""


class JsonFileStore(MemoryStore):
    """MemoryStore that rewrites a JSON file after every save."""

    def __init__(self, path: str | os.PathLike):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        for raw in data.get("accounts", []):
            account = AccountConfig.model_validate(raw)
            self._accounts[account.id] = account
        for raw in data.get("invoices", []):
            invoice = Invoice.model_validate(raw)
            self._invoices[invoice.id] = invoice
        self._next_invoice_id = max(self._invoices, default=0) + 1
        logger.debug(
            "Loaded %d accounts and %d invoices from %s",
            len(self._accounts), len(self._invoices), self.path,
        )

    def _flush(self) -> None:
        data = {
            "accounts": [a.model_dump(mode="json") for a in self._accounts.values()],
            "invoices": [i.model_dump(mode="json") for i in self._invoices.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crash never leaves a truncated file
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".arca-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except Exception:
            os.unlink(tmp)
            raise
