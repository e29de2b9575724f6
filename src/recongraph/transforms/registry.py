"""Transform registry.

Maps canonical transform names to descriptors and builds an alias
lookup table at registration time. Every alias and the canonical name
itself are indexed lower-cased, so ``ShodanSslSearch``, ``sss`` and
``shodan_ssl_search`` all resolve to the same descriptor.
"""

from __future__ import annotations

import logging
from typing import Iterator

from recongraph.errors import UnknownTransformError
from recongraph.transforms.base import TransformDescriptor

logger = logging.getLogger("recongraph.transforms.registry")


class TransformRegistry:
    """Name and alias lookup over registered transform descriptors."""

    def __init__(self, *descriptors: TransformDescriptor):
        self._descriptors: dict[str, TransformDescriptor] = {}
        self._aliases: dict[str, str] = {}
        self.register(*descriptors)

    def register(self, *descriptors: TransformDescriptor) -> None:
        """Add descriptors, indexing every alias.

        Re-registering a canonical name replaces the previous descriptor.
        An alias claimed by two different transforms goes to the one
        registered last, with a warning.
        """
        for descriptor in descriptors:
            self._descriptors[descriptor.name] = descriptor
            for alias in [descriptor.name, *descriptor.alias]:
                key = alias.lower()
                previous = self._aliases.get(key)
                if previous is not None and previous != descriptor.name:
                    logger.warning(
                        "Alias %s moved from %s to %s", key, previous, descriptor.name,
                    )
                self._aliases[key] = descriptor.name
            logger.debug(
                "Registered transform %s (%s)", descriptor.name, ", ".join(descriptor.alias),
            )

    def resolve(self, name: str) -> TransformDescriptor:
        """Look up a descriptor by canonical name or alias."""
        canonical = self._aliases.get(name.lower())
        if canonical is None:
            raise UnknownTransformError(name.lower())
        return self._descriptors[canonical]

    def descriptors(self) -> list[TransformDescriptor]:
        """All registered descriptors, in registration order."""
        return list(self._descriptors.values())

    def aliases(self) -> dict[str, str]:
        return dict(self._aliases)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._aliases

    def __len__(self) -> int:
        return len(self._descriptors)

    def __iter__(self) -> Iterator[TransformDescriptor]:
        return iter(self.descriptors())


def default_registry() -> TransformRegistry:
    """A registry holding the bundled transforms."""
    from recongraph.transforms.shodan import SHODAN_TRANSFORMS

    return TransformRegistry(*SHODAN_TRANSFORMS)
