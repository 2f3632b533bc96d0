"""Captured environment snapshot and its on-disk form.

The snapshot is taken once at startup and never mutated. It crosses the
privilege boundary as a small JSON document.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterator, Mapping
from types import MappingProxyType

FORMAT_VERSION = 1


class CapturedEnvironment(Mapping):
    """Read-only, insertion-ordered mapping of environment variables."""

    __slots__ = ("_environ",)

    def __init__(self, environ: Mapping[str, str]):
        self._environ = MappingProxyType(dict(environ))

    @classmethod
    def capture(cls, source: Mapping[str, str] | None = None) -> CapturedEnvironment:
        """Snapshot the exported environment of the current process."""
        return cls(os.environ if source is None else source)

    def __getitem__(self, name: str) -> str:
        return self._environ[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._environ)

    def __len__(self) -> int:
        return len(self._environ)

    def __repr__(self) -> str:
        # Values may hold secrets; only show the names.
        return f"CapturedEnvironment({len(self)} variables)"

    def to_dict(self) -> dict[str, str]:
        return dict(self._environ)

    def dumps(self) -> str:
        """Serialize to the JSON document read by the restore helper."""
        return json.dumps({"version": FORMAT_VERSION, "environ": self.to_dict()})

    @classmethod
    def loads(cls, text: str) -> CapturedEnvironment:
        """Parse a document produced by :meth:`dumps`.

        Raises:
            ValueError: If the document is malformed or of an unknown version.
        """
        data = json.loads(text)
        if not isinstance(data, dict) or data.get("version") != FORMAT_VERSION:
            raise ValueError("unsupported environment snapshot format")

        environ = data.get("environ")
        if not isinstance(environ, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in environ.items()
        ):
            raise ValueError("environment snapshot must map strings to strings")
        return cls(environ)
