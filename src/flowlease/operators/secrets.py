"""Hierarchical secret lookup scoped by namespace and operator selectors."""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

from flowlease.errors import ConfigError, SecretAccessDeniedError

logger = logging.getLogger(__name__)

_SECRETS_FILE_PREFIX = "secrets."


class SecretProvider:
    """Read-only view over dotted secret keys such as ``aws.sql.password``.

    ``get_secrets("aws")`` returns a child view rooted at ``aws.``; lookups on
    the child are relative to that namespace. ``restricted`` narrows a view to
    the selectors an operator declared, so an operator can never read keys it
    did not ask for.
    """

    __slots__ = ("_allowed", "_prefix", "_values")

    def __init__(
        self,
        values: Mapping[str, str] | None = None,
        *,
        prefix: str = "",
        allowed: tuple[str, ...] | None = None,
    ) -> None:
        self._values = dict(values or {})
        self._prefix = prefix
        self._allowed = allowed

    @classmethod
    def from_nested(cls, values: Mapping[str, object]) -> SecretProvider:
        """Build from ``{"aws": {"access-key-id": "..."}}`` style mappings."""

        return cls(_flatten(values))

    def get_secrets(self, namespace: str) -> SecretProvider:
        return SecretProvider(
            self._values,
            prefix=f"{self._prefix}{namespace}.",
            allowed=self._allowed,
        )

    def restricted(self, selectors: Sequence[str]) -> SecretProvider:
        return SecretProvider(self._values, prefix=self._prefix, allowed=tuple(selectors))

    def get_secret_optional(self, key: str) -> str | None:
        full_key = f"{self._prefix}{key}"
        if self._allowed is not None and not any(
            fnmatch.fnmatchcase(full_key, selector) for selector in self._allowed
        ):
            raise SecretAccessDeniedError(
                f"Secret {full_key!r} is not covered by selectors {list(self._allowed)!r}",
            )
        return self._values.get(full_key)

    def get_secret(self, key: str) -> str:
        value = self.get_secret_optional(key)
        if value is None:
            raise ConfigError(f"Secret {self._prefix}{key!r} doesn't exist")
        return value

    def first_secret(self, key: str, namespaces: Sequence[str]) -> str | None:
        """Return ``key`` from the first namespace that defines it.

        ``namespaces`` must be ordered most specific first; an empty string
        stands for this provider's own namespace.
        """

        for namespace in namespaces:
            provider = self.get_secrets(namespace) if namespace else self
            value = provider.get_secret_optional(key)
            if value is not None:
                return value
        return None


def load_secrets_file(path: Path) -> SecretProvider:
    """Read ``secrets.<namespace>.<key> = <value>`` lines into a provider."""

    values: dict[str, str] = {}
    for line_no, raw_line in enumerate(path.read_text("utf-8").splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ConfigError(f"Invalid secrets line {line_no} in {path}: expected key=value")
        key, value = line.split("=", 1)
        key = key.strip()
        if not key.startswith(_SECRETS_FILE_PREFIX):
            logger.debug("Ignoring non-secret config key %s in %s", key, path)
            continue
        values[key[len(_SECRETS_FILE_PREFIX) :]] = value.strip()
    return SecretProvider(values)


def _flatten(values: Mapping[str, object], prefix: str = "") -> dict[str, str]:
    flat: dict[str, str] = {}
    for key, value in values.items():
        full_key = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, prefix=f"{full_key}."))
        else:
            flat[full_key] = str(value)
    return flat
