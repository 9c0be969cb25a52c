"""Exception taxonomy shared by the indexing, explanation, chat and enrichment layers.

Single-entity operations let these propagate to the caller. Bulk operations
catch them per item and report them in aggregate counts.
"""

from __future__ import annotations


class MoveLensError(Exception):
    """Base class for every error raised by movelens."""


class NotFoundError(MoveLensError):
    """A module, package, analysis or chat does not exist.

    Attributes:
        kind: Entity kind ('module', 'package', 'analysis', 'chat').
        ref: The id or alternate key that was looked up.
    """

    def __init__(self, kind: str, ref: object) -> None:
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind.capitalize()} {ref} not found")


class SourceUnavailableError(MoveLensError):
    """Decompiled source could not be obtained for a module."""

    def __init__(self, package_address: str, module_name: str, reason: str = "") -> None:
        self.package_address = package_address
        self.module_name = module_name
        self.reason = reason
        message = f"Source unavailable for {package_address}::{module_name}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ProviderError(MoveLensError):
    """An embedding or completion call failed (quota, timeout, transport)."""


class ValidationError(MoveLensError, ValueError):
    """An identifier is malformed, e.g. a module full name without '::'."""


def split_full_name(full_name: str) -> tuple[str, str]:
    """Split ``0xADDR::module`` into ``(address, module)``.

    Anything after the first ``::`` is treated as the module name.

    Raises:
        ValidationError: If *full_name* has no ``::`` separator or an empty part.
    """
    address, sep, module_name = full_name.partition("::")
    if not sep or not address or not module_name:
        raise ValidationError(f"Invalid module full name: '{full_name}'")
    return address, module_name


class MissingExplanationError(MoveLensError):
    """A summary needs explanations that have not been generated yet."""
