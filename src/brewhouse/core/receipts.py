"""File-based receipt store: one JSON document per installed package."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, List

from brewhouse.core.errors import ReceiptStoreError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import PackageKind, Receipt

log = get_logger(__name__)


class ReceiptStore:
    """Receipts keyed by package name.

    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a half-written receipt behind.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _file(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def get(self, name: str) -> Receipt | None:
        """Load the receipt for ``name``.

        Returns:
            The Receipt, or None when the package is not installed.

        Raises:
            ReceiptStoreError: if the receipt exists but cannot be parsed.
        """
        f = self._file(name)
        if not f.exists():
            return None
        try:
            return Receipt.from_dict(json.loads(f.read_text()))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            log.error("receipt_corrupted", package=name, path=str(f), error=str(e))
            raise ReceiptStoreError(
                "Receipt is corrupted", package=name, path=str(f)
            ) from e

    def all(self, kind: PackageKind | None = None) -> Dict[str, Receipt]:
        """Every receipt, optionally filtered by kind, keyed by name."""
        receipts: Dict[str, Receipt] = {}
        for f in sorted(self.root.glob("*.json")):
            receipt = self.get(f.stem)
            if receipt is None:
                continue
            if kind is None or receipt.kind is kind:
                receipts[receipt.name] = receipt
        return receipts

    def names(self) -> List[str]:
        return sorted(f.stem for f in self.root.glob("*.json"))

    def write(self, receipt: Receipt) -> None:
        f = self._file(receipt.name)
        tmp = f.with_suffix(".json.tmp")
        try:
            tmp.write_text(receipt.to_json())
            os.replace(tmp, f)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            log.error("receipt_write_failed", package=receipt.name, error=str(e), exc_info=True)
            raise ReceiptStoreError(
                "Failed to write receipt", package=receipt.name, path=str(f)
            ) from e
        log.debug("receipt_written", package=receipt.name, version=receipt.pkg_version)

    def delete(self, name: str) -> None:
        f = self._file(name)
        try:
            f.unlink(missing_ok=True)
        except OSError as e:
            raise ReceiptStoreError("Failed to delete receipt", package=name, path=str(f)) from e
        log.debug("receipt_deleted", package=name)

    def snapshot(self, names: List[str]) -> Dict[str, bytes | None]:
        """Raw bytes of the given receipts, None for absent ones."""
        out: Dict[str, bytes | None] = {}
        for name in names:
            f = self._file(name)
            out[name] = f.read_bytes() if f.exists() else None
        return out

    def restore(self, snapshot: Dict[str, bytes | None]) -> None:
        """Put receipts back exactly as captured by :meth:`snapshot`."""
        for name, data in snapshot.items():
            f = self._file(name)
            if data is None:
                f.unlink(missing_ok=True)
            else:
                tmp = f.with_suffix(".json.tmp")
                tmp.write_bytes(data)
                os.replace(tmp, f)
