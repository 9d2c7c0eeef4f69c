"""Derive installed package status from receipt, metadata and prefix."""

from __future__ import annotations

import os

from brewhouse.core.errors import PackageNotFoundError
from brewhouse.core.models import PackageKind, PackageStatus, Receipt
from brewhouse.core.prefix import Prefix
from brewhouse.core.versions import Version
from brewhouse.providers.base import MetadataStore


def latest_version(receipt: Receipt, metadata: MetadataStore) -> str | None:
    try:
        return metadata.get(receipt.name).pkg_version
    except PackageNotFoundError:
        return None


def derive_status(receipt: Receipt, metadata: MetadataStore, prefix: Prefix) -> PackageStatus:
    """Derive the PackageStatus for one installed package."""
    status = PackageStatus.NONE

    latest = latest_version(receipt, metadata)
    if latest is None:
        status |= PackageStatus.ORPHANED
    elif Version.parse(latest) > Version.parse(receipt.pkg_version):
        status |= PackageStatus.OUTDATED

    if receipt.kind is PackageKind.FORMULA:
        opt = prefix.opt_link(receipt.name)
        keg = prefix.keg(receipt.name, receipt.pkg_version)
        if not opt.is_symlink() or os.path.realpath(opt) != os.path.realpath(keg):
            status |= PackageStatus.NOT_LINKED
    if receipt.built_from_source:
        status |= PackageStatus.FROM_SOURCE
    if not receipt.requested:
        status |= PackageStatus.DEPENDENCY

    return status
