"""BuildManifest.plist model.

Only the part of the manifest dscify needs is modelled: the ordered
`BuildIdentities` and, for each, the `Manifest` mapping of component
names to `{Info: {Path}}`.
"""

from __future__ import annotations

import plistlib
from xml.parsers.expat import ExpatError
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .Errors import ImagePathNotFound, MalformedManifest

MANIFEST_PATH = "BuildManifest.plist"
SYSTEM_OS_COMPONENT = "Cryptex1,SystemOS"


@dataclass(frozen=True)
class ManifestItem:
    path: str | None = None

    @classmethod
    def from_plist(cls, item: Dict[str, Any]) -> "ManifestItem":
        info = item.get("Info", {})
        if not isinstance(info, dict):
            raise MalformedManifest("Manifest item Info is not a dictionary")
        path = info.get("Path")
        if path is not None and not isinstance(path, str):
            raise MalformedManifest("Manifest item Path is not a string")
        return cls(path=path)


@dataclass(frozen=True)
class BuildIdentity:
    manifest: Dict[str, ManifestItem] = field(default_factory=dict)

    @classmethod
    def from_plist(cls, identity: Dict[str, Any]) -> "BuildIdentity":
        manifest = identity.get("Manifest", {})
        if not isinstance(manifest, dict):
            raise MalformedManifest("Build identity Manifest is not a dictionary")
        items = {}
        for name, item in manifest.items():
            if not isinstance(item, dict):
                raise MalformedManifest(f"Manifest entry {name!r} is not a dictionary")
            items[name] = ManifestItem.from_plist(item)
        return cls(manifest=items)


@dataclass(frozen=True)
class Manifest:
    """Decoded BuildManifest.plist.

    Attributes:
        build_identities (List[BuildIdentity]): Identities in manifest order.
    """
    build_identities: List[BuildIdentity] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Manifest":
        """Decode an XML or binary property list.

        Raises:
            MalformedManifest: If the data is not a plist or lacks BuildIdentities.
        """
        try:
            root = plistlib.loads(data)
        except (plistlib.InvalidFileException, ExpatError, ValueError, TypeError) as e:
            raise MalformedManifest(f"Could not decode {MANIFEST_PATH}: {e}") from e

        if not isinstance(root, dict):
            raise MalformedManifest(f"{MANIFEST_PATH} root is not a dictionary")
        identities = root.get("BuildIdentities")
        if not isinstance(identities, list):
            raise MalformedManifest(f"{MANIFEST_PATH} has no BuildIdentities list")
        if not all(isinstance(identity, dict) for identity in identities):
            raise MalformedManifest("Build identity is not a dictionary")

        return cls(build_identities=[BuildIdentity.from_plist(identity) for identity in identities])

    def image_path(self, component: str = SYSTEM_OS_COMPONENT) -> str:
        """Return the archive path of `component` in the first build identity.

        Raises:
            ImagePathNotFound: If there is no build identity, the component is
                missing or its path is null.
        """
        # TODO: pick the identity matching the requested device instead of the first one
        if not self.build_identities:
            raise ImagePathNotFound("Manifest has no build identities")
        item = self.build_identities[0].manifest.get(component)
        if item is None or item.path is None:
            raise ImagePathNotFound(f"Could not find {component} image path")
        return item.path
