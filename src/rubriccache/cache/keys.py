"""Versioned cache key derivation.

Key format: {prefix}:{namespace}:{digest}

Where:
- prefix: deployment key prefix ("rubric")
- namespace: registered namespace name (e.g. "role_sheet")
- digest: BLAKE2b-160 hex of the namespace, canonical params, master
  version, namespace version vector and security salt

Parameters are typed per namespace, so two call sites can never spell the
same logical key differently. Identical inputs under identical version state
always give the identical key; any version or salt change gives a new one.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

import orjson
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.cache.salt import SaltProvider
from rubriccache.cache.versions import VersionState, VersionStore
from rubriccache.config import settings
from rubriccache.errors import InvalidParamsError, UnknownNamespaceError

DIGEST_SIZE = 20
FIELD_SEP = "\x1f"
# prefix + namespace + digest + separators stays under 120 characters
_PREFIX_RE = re.compile(r"^[A-Za-z0-9_]{1,24}$")
_NAME_RE = re.compile(r"^[A-Za-z0-9_]{1,48}$")


# -------------------------------------------------------------------------
# Parameter models
# -------------------------------------------------------------------------


class KeyParams(BaseModel):
    """Base class for the typed parameters of a namespace."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    def canonical(self) -> bytes:
        """Deterministic byte form: JSON with sorted keys."""
        return orjson.dumps(self.model_dump(mode="json"), option=orjson.OPT_SORT_KEYS)


class NoParams(KeyParams):
    """Namespace with a single, global entry."""


class UserParams(KeyParams):
    """Entries scoped to one user (users are identified by email)."""

    user_id: str

    @field_validator("user_id")
    @classmethod
    def normalize_user_id(cls, value: str) -> str:
        if not value:
            raise ValueError("user_id must not be empty")
        return value.lower()


class RoleParams(KeyParams):
    """Entries shared by every member of a role."""

    role: str

    @field_validator("role")
    @classmethod
    def require_role(cls, value: str) -> str:
        if not value:
            raise ValueError("role must not be empty")
        return value


# -------------------------------------------------------------------------
# Namespace registry
# -------------------------------------------------------------------------


@dataclass(frozen=True)
class Namespace:
    """A registered cache namespace."""

    name: str
    params_type: type[KeyParams]
    ttl: int

    @property
    def user_scoped(self) -> bool:
        return issubclass(self.params_type, UserParams)

    @property
    def role_scoped(self) -> bool:
        return issubclass(self.params_type, RoleParams)

    @property
    def singleton(self) -> bool:
        return issubclass(self.params_type, NoParams)


class NamespaceRegistry:
    """Closed set of namespaces known to the key builder."""

    def __init__(self, namespaces: Iterable[Namespace] = ()):
        self._namespaces: dict[str, Namespace] = {}
        for namespace in namespaces:
            self.register(namespace)

    def register(self, namespace: Namespace) -> None:
        if not _NAME_RE.match(namespace.name):
            raise ValueError(f"Invalid namespace name: {namespace.name!r}")
        self._namespaces[namespace.name] = namespace

    def get(self, name: str) -> Namespace:
        try:
            return self._namespaces[name]
        except KeyError:
            raise UnknownNamespaceError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._namespaces

    def __iter__(self) -> Iterator[Namespace]:
        return iter(self._namespaces.values())

    def user_scoped(self) -> list[Namespace]:
        return [ns for ns in self if ns.user_scoped]

    def role_scoped(self) -> list[Namespace]:
        return [ns for ns in self if ns.role_scoped]


def _ttl(name: str) -> int:
    return settings.namespace_ttls.get(name, settings.default_ttl)


def default_registry() -> NamespaceRegistry:
    """Namespaces used by the evaluation form."""
    return NamespaceRegistry(
        [
            Namespace("user_profile", UserParams, _ttl("user_profile")),
            Namespace("user_context", UserParams, _ttl("user_context")),
            Namespace("role_sheet", RoleParams, _ttl("role_sheet")),
            Namespace("role_mappings", NoParams, _ttl("role_mappings")),
            Namespace("domain_mappings", NoParams, _ttl("domain_mappings")),
            Namespace("staff_data", NoParams, _ttl("staff_data")),
            Namespace("settings_data", NoParams, _ttl("settings_data")),
        ]
    )


# -------------------------------------------------------------------------
# Key derivation
# -------------------------------------------------------------------------


def derive_key(
    prefix: str,
    namespace: str,
    params: KeyParams,
    state: VersionState,
    salt: str,
) -> str:
    """Pure key derivation from fully resolved inputs."""
    material = FIELD_SEP.join(
        [
            namespace,
            params.canonical().decode(),
            state.master_version,
            state.token(),
            salt,
        ]
    )
    digest = hashlib.blake2b(material.encode(), digest_size=DIGEST_SIZE).hexdigest()
    return f"{prefix}:{namespace}:{digest}"


def parse_key(key: str) -> dict[str, str] | None:
    """Split a key into its components. Returns None for foreign keys."""
    parts = key.split(":")
    if len(parts) != 3 or not all(parts):
        return None
    return {"prefix": parts[0], "namespace": parts[1], "digest": parts[2]}


class KeyBuilder:
    """Builds versioned, salted keys against the current durable state."""

    def __init__(
        self,
        session: AsyncSession,
        registry: NamespaceRegistry | None = None,
        prefix: str | None = None,
        versions: VersionStore | None = None,
        salts: SaltProvider | None = None,
    ):
        self.registry = registry or default_registry()
        self.prefix = prefix or settings.cache_key_prefix
        if not _PREFIX_RE.match(self.prefix):
            raise ValueError(f"Invalid cache key prefix: {self.prefix!r}")
        self.versions = versions or VersionStore(session)
        self.salts = salts or SaltProvider(session)

    def validate(self, namespace: str, params: KeyParams) -> Namespace:
        registered = self.registry.get(namespace)
        if not isinstance(params, registered.params_type):
            raise InvalidParamsError(namespace, registered.params_type, type(params))
        return registered

    async def build_key(self, namespace: str, params: KeyParams | None = None) -> str:
        if params is None:
            params = NoParams()
        self.validate(namespace, params)
        state = await self.versions.state_for(namespace)
        salt = await self.salts.get_salt()
        return derive_key(self.prefix, namespace, params, state, salt)
