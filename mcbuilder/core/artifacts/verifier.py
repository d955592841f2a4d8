# mcbuilder/core/artifacts/verifier.py
"""
Minecraft Builder – artifact verifier
=====================================

Every digest an artifact declares (md5 / sha1 / sha256, any subset) is
recomputed from the downloaded bytes and must match.  A mismatch is an
`IntegrityError`, never a warning, and the caller must throw the file
away.

Artifacts that declare no digest at all are accepted as-is ("trust on
first use"); the reconciler reports them as reduced-trust in status.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Dict, Iterable, Mapping

from mcbuilder.core.errors import IntegrityError
from mcbuilder.core.models import DIGEST_ALGORITHMS

_CHUNK = 65536


class DigestSet:
    """Incremental hashers for the digests an artifact declares."""

    def __init__(self, expected: Mapping[str, str]):
        unknown = set(expected) - set(DIGEST_ALGORITHMS)
        if unknown:
            raise ValueError(f"unsupported digest algorithm(s): {sorted(unknown)}")
        self.expected: Dict[str, str] = {k: v.lower() for k, v in expected.items()}
        self._hashers = {algo: hashlib.new(algo) for algo in self.expected}

    def update(self, chunk: bytes) -> None:
        for h in self._hashers.values():
            h.update(chunk)

    def hexdigests(self) -> Dict[str, str]:
        return {algo: h.hexdigest() for algo, h in self._hashers.items()}

    def verify(self, url: str) -> None:
        actual = self.hexdigests()
        for algo in DIGEST_ALGORITHMS:
            if algo in self.expected and actual[algo] != self.expected[algo]:
                raise IntegrityError(url, algo, self.expected[algo], actual[algo])


def file_digests(path: Path, algorithms: Iterable[str] = ("sha256",)) -> Dict[str, str]:
    hashers = {algo: hashlib.new(algo) for algo in algorithms}
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            for h in hashers.values():
                h.update(chunk)
    return {algo: h.hexdigest() for algo, h in hashers.items()}

