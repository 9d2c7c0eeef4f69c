"""Cask metadata provider.

Artifacts follow the ``brew info --json=v2 --cask`` layout: a list of
single-key dicts whose value is a list of positional arguments optionally
followed by an options dict, e.g.
``{"binary": ["Foo.app/Contents/MacOS/foo", {"target": "foo"}]}``.
Script stanzas take ``{"preflight": {"script": ["/bin/sh", "-c", "..."]}}``.
"""

from __future__ import annotations

from typing import Any, List

from brewhouse.core.config import normalise_arch
from brewhouse.core.errors import PackageNotFoundError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import CaskArtifact, Dependency, Package, PackageKind, Stanza, StanzaKind
from brewhouse.providers.base import dependency_names

log = get_logger(__name__)

STANZA_KEYS = {
    "app": StanzaKind.APP,
    "binary": StanzaKind.BINARY,
    "pkg": StanzaKind.PKG,
    "font": StanzaKind.FONT,
    "plugin": StanzaKind.PLUGIN,
    "qlplugin": StanzaKind.PLUGIN,
    "vst_plugin": StanzaKind.PLUGIN,
    "vst3_plugin": StanzaKind.PLUGIN,
    "audio_unit_plugin": StanzaKind.PLUGIN,
    "preflight": StanzaKind.PREFLIGHT,
    "postflight": StanzaKind.POSTFLIGHT,
    "uninstall": StanzaKind.UNINSTALL,
    "zap": StanzaKind.ZAP,
}

_CASK_ARCH = {"intel": "x86_64", "arm": "arm64"}


def _script_args(value: Any) -> tuple[str, ...]:
    if isinstance(value, dict):
        value = value.get("script") or value.get("executable")
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value or [])


def parse_stanzas(artifacts: List[dict[str, Any]]) -> List[Stanza]:
    """Turn the raw artifacts list into typed stanzas, preserving order."""
    stanzas: List[Stanza] = []

    for entry in artifacts or []:
        for key, value in entry.items():
            kind = STANZA_KEYS.get(key)
            if kind is None:
                log.warning("cask_stanza_ignored", stanza=key)
                continue

            if kind in (StanzaKind.PREFLIGHT, StanzaKind.POSTFLIGHT):
                args = _script_args(value)
                if args:
                    stanzas.append(Stanza(kind=kind, args=args))
                continue

            if kind in (StanzaKind.UNINSTALL, StanzaKind.ZAP):
                for directives in value if isinstance(value, list) else [value]:
                    if directives:
                        stanzas.append(Stanza(kind=kind, directives=dict(directives)))
                continue

            items = value if isinstance(value, list) else [value]
            positional = [v for v in items if not isinstance(v, dict)]
            options = next((v for v in items if isinstance(v, dict)), {})
            for source in positional:
                stanzas.append(Stanza(kind=kind, source=str(source), target=options.get("target")))

    return stanzas


def parse_arches(c: dict[str, Any]) -> tuple[str, ...]:
    arches: List[str] = []
    for item in (c.get("depends_on") or {}).get("arch") or []:
        if isinstance(item, dict):
            arches.append(_CASK_ARCH.get(item.get("type", ""), normalise_arch(item.get("type", ""))))
        else:
            arches.append(normalise_arch(str(item)))
    return tuple(sorted(set(arches)))


def parse_cask(c: dict[str, Any]) -> Package:
    """Build a Package from one cask dict.

    Args:
        c: Cask definition.

    Returns:
        An immutable Package instance.
    """
    token = c.get("token") or (c.get("name") or [None])[0]
    if not token:
        raise PackageNotFoundError("Cask definition has no token", kind="cask")
    if not c.get("version") or not c.get("url"):
        raise PackageNotFoundError(
            f"Cask '{token}' has no version or url", package=token, kind="cask"
        )

    deps = [
        Dependency(name=name)
        for name in dependency_names((c.get("depends_on") or {}).get("formula"))
    ]
    artifact = CaskArtifact(
        url=c["url"],
        sha256=c.get("sha256") or "",
        stanzas=tuple(parse_stanzas(c.get("artifacts") or [])),
    )

    pkg = Package(
        name=token,
        version=str(c["version"]),
        kind=PackageKind.CASK,
        desc=c.get("desc"),
        dependencies=tuple(deps),
        cask=artifact,
        arches=parse_arches(c),
        tap=c.get("tap"),
    )
    log.debug("cask_parsed", package=pkg.name, version=pkg.version, stanzas=len(artifact.stanzas))

    return pkg
