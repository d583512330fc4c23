"""Typed Azure resource identities.

Azure resource IDs follow the pattern:
/subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}

Every ID is a sequence of ``key/value`` pairs, including the ``providers``
segment whose value is the provider namespace. ResourceIdentity stores that
sequence once; nothing downstream re-parses the string.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidIdentityError

PROVIDERS_KEY = "providers"


@dataclass(frozen=True, eq=False)
class ResourceIdentity:
    """Immutable identity of a remote resource.

    Construct with ``of()`` from naming fields or ``parse()`` from a
    persisted ID string. Equality, hashing and lookups by segment key are
    case-insensitive, as they are in Resource Manager. The original casing
    is kept for display and requests.
    """

    segments: tuple[tuple[str, str], ...]

    def __post_init__(self) -> None:
        if not self.segments:
            raise InvalidIdentityError("resource identity must have at least one segment")
        for key, value in self.segments:
            if not key or not value:
                raise InvalidIdentityError(f"empty segment in resource identity: {key!r}/{value!r}")
            if "/" in key or "/" in value:
                raise InvalidIdentityError(f"segment must not contain '/': {key!r}/{value!r}")

    @classmethod
    def of(cls, *segments: tuple[str, str]) -> ResourceIdentity:
        """Build an identity from ordered ``(key, value)`` pairs."""
        return cls(segments=tuple((str(k), str(v)) for k, v in segments))

    @classmethod
    def parse(cls, resource_id: str) -> ResourceIdentity:
        """Parse a persisted resource ID string.

        Raises:
            InvalidIdentityError: If the string is not a well-formed ID.
        """
        if not resource_id or not resource_id.startswith("/"):
            raise InvalidIdentityError(f"resource ID must start with '/': {resource_id!r}")

        parts = resource_id[1:].split("/")
        if parts and parts[-1] == "":
            parts = parts[:-1]
        if not parts:
            raise InvalidIdentityError(f"resource ID has no segments: {resource_id!r}")
        if any(p == "" for p in parts):
            raise InvalidIdentityError(f"resource ID has an empty segment: {resource_id!r}")
        if len(parts) % 2 != 0:
            raise InvalidIdentityError(
                f"resource ID is missing a value for segment {parts[-1]!r}: {resource_id!r}"
            )

        return cls(segments=tuple(zip(parts[::2], parts[1::2], strict=True)))

    @property
    def id_string(self) -> str:
        """The canonical ``/key/value/...`` form persisted by callers."""
        return "".join(f"/{key}/{value}" for key, value in self.segments)

    @property
    def name(self) -> str:
        return self.segments[-1][1]

    @property
    def resource_type(self) -> str:
        """Provider namespace and types after the last ``providers`` segment.

        Returns "unknown" when the identity has no provider segment.
        """
        last_provider = None
        for index, (key, _) in enumerate(self.segments):
            if key.lower() == PROVIDERS_KEY:
                last_provider = index
        if last_provider is None:
            return "unknown"

        namespace = self.segments[last_provider][1]
        types = [key for key, _ in self.segments[last_provider + 1 :]]
        if not types:
            return "unknown"
        return "/".join([namespace, *types])

    def get(self, key: str) -> str | None:
        """Value of the last segment named ``key``, or None."""
        found = None
        for segment_key, value in self.segments:
            if segment_key.lower() == key.lower():
                found = value
        return found

    def require(self, *keys: str) -> ResourceIdentity:
        """Check that every key is present, for kind-specific ID shapes.

        Raises:
            InvalidIdentityError: Naming the first missing key.
        """
        for key in keys:
            if self.get(key) is None:
                raise InvalidIdentityError(f"resource ID is missing {key!r}: {self.id_string}")
        return self

    def child(self, key: str, value: str) -> ResourceIdentity:
        """A new identity one segment below this one."""
        return ResourceIdentity(segments=(*self.segments, (key, value)))

    def __str__(self) -> str:
        return self.id_string

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceIdentity):
            return NotImplemented
        return self.id_string.lower() == other.id_string.lower()

    def __hash__(self) -> int:
        return hash(self.id_string.lower())
